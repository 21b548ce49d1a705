"""
Formatting helpers for reports and CLI output.
"""

_UNITS = ['K', 'M', 'G', 'T', 'P']


def format_size(size_bytes: int) -> str:
    """
    Human-readable size in the style of `du -h` (e.g. 512B, 4.0K, 12M, 1.5G).

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string
    """
    if size_bytes < 1024:
        return f"{size_bytes}B"

    size = float(size_bytes)
    for unit in _UNITS:
        size /= 1024
        if size < 1024 or unit == _UNITS[-1]:
            break

    if size < 10:
        return f"{size:.1f}{unit}"
    return f"{size:.0f}{unit}"


def mask_secret(secret: str, visible: int = 4) -> str:
    """Hide all but the last characters of a token."""
    if not secret:
        return ''
    if len(secret) <= visible:
        return '*' * len(secret)
    return '*' * (len(secret) - visible) + secret[-visible:]
