from typing import Callable, Dict, Optional  # noqa: F401

from flagcore.client import Client
from flagcore.feature_flags import InconclusiveMatchError
from flagcore.flag_definition_cache import (
    FlagDefinitionCacheData,
    FlagDefinitionCacheProvider,
)
from flagcore.flag_poller import ClientError, FeatureFlagsPoller
from flagcore.request import APIError, MalformedResponseError, QuotaLimitError
from flagcore.types import FeatureFlagResult, FlagsAndPayloads, FlagValue
from flagcore.version import VERSION

__version__ = VERSION

__all__ = [
    "APIError",
    "Client",
    "ClientError",
    "FeatureFlagResult",
    "FeatureFlagsPoller",
    "FlagDefinitionCacheData",
    "FlagDefinitionCacheProvider",
    "FlagValue",
    "FlagsAndPayloads",
    "InconclusiveMatchError",
    "MalformedResponseError",
    "QuotaLimitError",
]

"""Settings."""
api_key = None  # type: Optional[str]
host = None  # type: Optional[str]
on_error = None  # type: Optional[Callable]
on_load = None  # type: Optional[Callable]
debug = False  # type: bool
disabled = False  # type: bool
personal_api_key = None  # type: Optional[str]
poll_interval = 30  # type: int
feature_flags_request_timeout_seconds = 10  # type: int
custom_headers = None  # type: Optional[Dict[str, str]]

default_client = None  # type: Optional[Client]


def feature_enabled(
    key,
    distinct_id,
    groups=None,
    person_properties=None,
    group_properties=None,
) -> Optional[bool]:
    """
    Use feature flags to enable or disable features for users.

    For example:
    ```python
    if flagcore.feature_enabled('beta feature', 'distinct id'):
        # do something
    ```

    Returns None when the flag can't be evaluated locally.
    """
    return _proxy(
        "feature_enabled",
        key=key,
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
    )


def get_feature_flag(
    key,
    distinct_id,
    groups=None,
    person_properties=None,
    group_properties=None,
) -> Optional[FlagValue]:
    """
    Get the value of a feature flag: True/False, a variant key, or None if
    it can't be evaluated locally.

    Example:
    ```python
    if flagcore.get_feature_flag('beta-feature', 'distinct_id') == 'test-variant':
        # do test variant code
    ```
    """
    return _proxy(
        "get_feature_flag",
        key=key,
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
    )


def get_all_flags(
    distinct_id,
    groups=None,
    person_properties=None,
    group_properties=None,
) -> Optional[Dict[str, FlagValue]]:
    """Get every flag that can be evaluated locally for the given user."""
    return _proxy(
        "get_all_flags",
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
    )


def get_feature_flag_payload(
    key,
    distinct_id,
    match_value=None,
    groups=None,
    person_properties=None,
    group_properties=None,
):
    return _proxy(
        "get_feature_flag_payload",
        key=key,
        distinct_id=distinct_id,
        match_value=match_value,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
    )


def get_all_flags_and_payloads(
    distinct_id,
    groups=None,
    person_properties=None,
    group_properties=None,
) -> FlagsAndPayloads:
    return _proxy(
        "get_all_flags_and_payloads",
        distinct_id=distinct_id,
        groups=groups,
        person_properties=person_properties,
        group_properties=group_properties,
    )


def feature_flag_definitions():
    """Returns loaded feature flags, if any. Helpful for debugging what flag information you have loaded."""
    return _proxy("feature_flag_definitions")


def load_feature_flags(force_reload=False):
    """Load feature flag definitions from the server."""
    return _proxy("load_feature_flags", force_reload=force_reload)


def is_local_evaluation_ready() -> bool:
    return _proxy("is_local_evaluation_ready")


def shutdown():
    """Stop polling for flag definitions"""
    if default_client:
        default_client.shutdown()


def setup():
    global default_client
    if not default_client:
        if not api_key:
            raise ValueError("API key is required")
        default_client = Client(
            api_key,
            host=host,
            debug=debug,
            on_error=on_error,
            on_load=on_load,
            personal_api_key=personal_api_key,
            poll_interval=poll_interval,
            disabled=disabled,
            feature_flags_request_timeout_seconds=feature_flags_request_timeout_seconds,
            custom_headers=custom_headers,
        )

    # always set incase user changes it
    default_client.disabled = disabled
    default_client.debug = debug


def _proxy(method, *args, **kwargs):
    """Create a client if one doesn't exist and send to it."""
    setup()

    fn = getattr(default_client, method)
    return fn(*args, **kwargs)
