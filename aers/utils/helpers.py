"""
Utility helpers for the AERS reporting system

Simple utility functions for ID and filename generation.
"""

import uuid
from datetime import date, datetime
from typing import Optional


def generate_report_id(short=True):
    """
    Generate unique report identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Report ID

    Examples:
        >>> generate_report_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def generate_download_filename(on: Optional[date] = None):
    """
    Filename offered when the user downloads a report

    Format: aers_report_{YYYY-MM-DD}.json

    Examples:
        >>> generate_download_filename(date(2025, 3, 14))
        'aers_report_2025-03-14.json'
    """
    on = on or date.today()
    return f"aers_report_{on.isoformat()}.json"


def generate_report_filename(prefix="aers_report", extension="json"):
    """
    Generate timestamped filename with unique ID for server-side copies

    Format: {prefix}_{YYYYMMDD_HHMMSS}_{short_uuid}.{extension}

    Examples:
        >>> generate_report_filename()
        'aers_report_20251126_153045_a3f7e2b9.json'
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    short_id = generate_report_id(short=True)
    return f"{prefix}_{timestamp}_{short_id}.{extension}"
