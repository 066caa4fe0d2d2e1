"""
Placeholder substitution for configuration strings.

Recognized tokens:
- {date}: run date as YYYYMMDD
- {archive_name}: the entry's resolved archive base name

Any other {token} is left untouched.
"""

from datetime import date
from typing import Dict, Optional


DATE_FORMAT = '%Y%m%d'
KNOWN_PLACEHOLDERS = ('date', 'archive_name')
DEFAULT_ARCHIVE_NAME = 'backup'


def format_run_date(run_date: date) -> str:
    """Format a run date the way archive names and {date} use it."""
    return run_date.strftime(DATE_FORMAT)


def build_context(archive_name: str, run_date: date) -> Dict[str, str]:
    """
    Build the substitution context for one entry.

    The archive name may itself reference {date}, so it is resolved
    against the date first.

    Args:
        archive_name: Raw archive_name from the configuration
        run_date: Local date captured at run start

    Returns:
        Dict with 'date' and 'archive_name' keys
    """
    date_str = format_run_date(run_date)
    resolved_name = resolve_placeholders(archive_name or '', {'date': date_str}).strip()
    return {'date': date_str, 'archive_name': resolved_name or DEFAULT_ARCHIVE_NAME}


def resolve_placeholders(template: Optional[str], context: Dict[str, str]) -> Optional[str]:
    """
    Substitute known placeholders in a template string.

    Args:
        template: String that may contain {date} / {archive_name}; None passes through
        context: Values for the known placeholders (missing keys are left verbatim)

    Returns:
        Resolved string
    """
    if template is None:
        return None

    result = template
    for key in KNOWN_PLACEHOLDERS:
        value = context.get(key)
        if value is not None:
            result = result.replace('{' + key + '}', value)
    return result
