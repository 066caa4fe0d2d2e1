#!/usr/bin/env python3
"""Development runner"""
from panbackup.cli import main

if __name__ == '__main__':
    main()
