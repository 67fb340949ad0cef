import logging
import re
from datetime import timezone

log = logging.getLogger("flagcore")


def remove_trailing_slash(host):
    if host.endswith("/"):
        return host[:-1]
    return host


def is_valid_regex(value) -> bool:
    try:
        re.compile(value)
        return True
    except re.error:
        return False


def convert_to_datetime_aware(date_obj):
    if date_obj.tzinfo is None:
        date_obj = date_obj.replace(tzinfo=timezone.utc)
    return date_obj


def stringify(value) -> str:
    """
    Render a property value the way the flags server does before comparing strings.

    Examples:
        >>> stringify(None)
        'null'
        >>> stringify(True)
        'true'
        >>> stringify(1.0)
        '1'
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def str_icontains(source, search):
    """
    Check if a string contains another string, ignoring case.

    Args:
        source: The string to search within
        search: The substring to search for

    Returns:
        bool: True if search is a substring of source (case-insensitive), False otherwise

    Examples:
        >>> str_icontains("Hello World", "WORLD")
        True
        >>> str_icontains("Hello World", "python")
        False
    """
    return stringify(search).casefold() in stringify(source).casefold()


def str_iequals(value, comparand):
    """
    Check if a string equals another string, ignoring case.

    Args:
        value: The string to compare
        comparand: The string to compare with

    Returns:
        bool: True if value and comparand are equal (case-insensitive), False otherwise

    Examples:
        >>> str_iequals("Hello World", "hello world")
        True
        >>> str_iequals("Hello World", "hello")
        False
    """
    return stringify(value).casefold() == stringify(comparand).casefold()


def safe_call(callback, *args):
    """Invoke a user supplied callback, logging anything it raises."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        log.exception(f"[FEATURE FLAGS] Error in callback {callback}: {e}")
