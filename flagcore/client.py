import atexit
import logging
from typing import Any, Dict, List, Optional, Union

from flagcore.feature_flags import (
    InconclusiveMatchError,
    compute_flag_locally,
    get_feature_flag_payload,
)
from flagcore.flag_definition_cache import FlagDefinitionCacheProvider
from flagcore.flag_poller import FeatureFlagsPoller
from flagcore.request import DEFAULT_HOST, determine_server_host
from flagcore.types import (
    FeatureFlagResult,
    FlagDefinitions,
    FlagsAndPayloads,
    FlagValue,
)
from flagcore.utils import safe_call

ID_TYPES = Union[int, str]


class Client(object):
    """
    Evaluates feature flags locally against definitions polled from the server.

    Every evaluation method returns `None` (or sets `fallbackToFlags` for
    batch calls) when a flag can't be decided locally. That is the signal to
    ask the server instead; evaluation never raises into application code.

    Examples:
        ```python
        from flagcore import Client
        client = Client('<project_api_key>', personal_api_key='<personal_api_key>')
        variant = client.get_feature_flag('new-checkout', 'user-123')
        if variant is None:
            # not decidable locally, ask the server
            ...
        ```
    """

    log = logging.getLogger("flagcore")

    def __init__(
        self,
        project_api_key: str,
        host=None,
        debug=False,
        on_error=None,
        on_load=None,
        poll_interval=30,
        personal_api_key=None,
        disabled=False,
        feature_flags_request_timeout_seconds=10,
        custom_headers=None,
        flag_definition_cache_provider: Optional[FlagDefinitionCacheProvider] = None,
        enable_local_evaluation=True,
    ):
        """
        Initialize a new client.

        Args:
            project_api_key: The project API key, sent as the `token` query parameter.
            host: The API host. Defaults to the US cloud.
            debug: Log at DEBUG level.
            on_error: Called with an exception when polling fails for a reason the caller should know about.
            on_load: Called with the number of flags after each successful load.
            poll_interval: Seconds between definition refreshes (at least 0.1).
            personal_api_key: Key used to fetch flag definitions. Without it nothing is loaded.
            disabled: Turn every evaluation into a no-op returning None.
            feature_flags_request_timeout_seconds: Timeout for the definitions request.
            custom_headers: Extra headers sent with the definitions request.
            flag_definition_cache_provider: Shares definitions between workers, see `flagcore.flag_definition_cache`.
            enable_local_evaluation: Start the background poller.

        Category:
            Initialization
        """
        self.api_key = project_api_key
        self.personal_api_key = personal_api_key
        self.on_error = on_error
        self.debug = debug
        self.disabled = disabled
        self.raw_host = host or DEFAULT_HOST
        self.host = determine_server_host(host)
        self.poll_interval = poll_interval
        self.feature_flags_request_timeout_seconds = (
            feature_flags_request_timeout_seconds
        )
        self.enable_local_evaluation = enable_local_evaluation

        if debug:
            # Ensures that debug level messages are logged when debug mode is on.
            # Otherwise, defaults to WARNING level. See https://docs.python.org/3/howto/logging.html#what-happens-if-no-configuration-is-provided
            logging.basicConfig()
            self.log.setLevel(logging.DEBUG)
        else:
            self.log.setLevel(logging.WARNING)

        self.flag_poller = FeatureFlagsPoller(
            personal_api_key,
            project_api_key,
            host=self.host,
            poll_interval=poll_interval,
            timeout=feature_flags_request_timeout_seconds,
            on_error=on_error,
            on_load=on_load,
            custom_headers=custom_headers,
            cache_provider=flag_definition_cache_provider,
        )

        if personal_api_key and enable_local_evaluation and not disabled:
            # On program exit, stop polling so no dangling thread outlives the client
            atexit.register(self.shutdown)
            self.flag_poller.start()

    @property
    def feature_flags(self):
        """
        Get the local evaluation feature flags.
        """
        return self.flag_poller.feature_flags

    @feature_flags.setter
    def feature_flags(self, flags):
        """
        Set the local evaluation feature flags.
        """
        self.flag_poller.feature_flags = flags

    @property
    def group_type_mapping(self) -> Dict[str, str]:
        return dict(self.flag_poller.definitions.group_type_mapping)

    @property
    def cohorts(self) -> Dict[str, Any]:
        return dict(self.flag_poller.definitions.raw_cohorts)

    def set_definitions(self, flags, group_type_mapping=None, cohorts=None):
        """Replace flags, group type mapping and cohorts in one step."""
        self.flag_poller.set_definitions(flags, group_type_mapping, cohorts)

    def load_feature_flags(self, force_reload=False):
        """
        Load feature flags for local evaluation.

        Does nothing once definitions have loaded successfully, unless `force_reload` is set.

        Examples:
            ```python
            client.load_feature_flags(force_reload=True)
            ```

        Category:
            Feature Flags
        """
        self.flag_poller.load_feature_flags(force_reload=force_reload)

    def is_local_evaluation_ready(self) -> bool:
        """True once definitions have loaded and at least one flag exists."""
        return self.flag_poller.is_local_evaluation_ready()

    def feature_flag_definitions(self):
        return self.feature_flags

    def _ensure_definitions(self) -> Optional[FlagDefinitions]:
        if not self.flag_poller.loaded_successfully_once and self.personal_api_key:
            self.load_feature_flags()
        if not self.flag_poller.loaded_successfully_once:
            return None
        return self.flag_poller.definitions

    def feature_enabled(
        self,
        key,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
    ) -> Optional[bool]:
        """
        Check if a feature flag is enabled for a user.

        Returns None when the flag can't be evaluated locally.

        Category:
            Feature Flags
        """
        response = self.get_feature_flag(
            key,
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
        )

        if response is None:
            return None
        return bool(response)

    def get_feature_flag(
        self,
        key,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
    ) -> Optional[FlagValue]:
        """
        Get the value of a feature flag for a user: True/False or a variant key.

        Args:
            key: The feature flag key.
            distinct_id: The distinct ID of the user.
            groups: Mapping of group type to group key, e.g. `{"company": "acme"}`.
            person_properties: Properties of the user.
            group_properties: Properties per group type, e.g. `{"company": {"plan": "pro"}}`.

        Returns:
            The flag value, or None if the flag is unknown or can't be decided
            locally, in which case the caller should ask the server.

        Examples:
            ```python
            variant = client.get_feature_flag('flag-key', 'distinct_id_of_your_user')
            if variant == 'variant-key':
                ...
            ```

        Category:
            Feature Flags
        """
        flag_result = self.get_feature_flag_result(
            key,
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
        )
        return flag_result.get_value() if flag_result else None

    def get_feature_flag_result(
        self,
        key,
        distinct_id,
        *,
        match_value: Optional[FlagValue] = None,
        groups=None,
        person_properties=None,
        group_properties=None,
    ) -> Optional[FeatureFlagResult]:
        """
        Evaluate a flag and look up its payload in one go.

        When `match_value` is given the flag is not evaluated: `match_value`
        is taken as its value and only the payload is looked up.

        Returns:
            Optional[FeatureFlagResult]: None if disabled, unknown or inconclusive.
        """
        if self.disabled:
            return None

        if match_value is not None:
            return self.compute_flag_and_payload_locally(key, match_value)

        person_properties, group_properties = (
            self._add_local_person_and_group_properties(
                distinct_id, groups or {}, person_properties, group_properties
            )
        )

        definitions = self._ensure_definitions()
        if definitions is None:
            return None

        flag_value = self._locally_evaluate_flag(
            definitions,
            key,
            distinct_id,
            groups or {},
            person_properties,
            group_properties,
        )
        if flag_value is None:
            return None

        payload = get_feature_flag_payload(definitions.flags_by_key[key], flag_value)
        return FeatureFlagResult.from_value_and_payload(key, flag_value, payload)

    def _locally_evaluate_flag(
        self,
        definitions: FlagDefinitions,
        key: str,
        distinct_id: ID_TYPES,
        groups: Dict[str, str],
        person_properties: Dict[str, Any],
        group_properties: Dict[str, Dict[str, Any]],
    ) -> Optional[FlagValue]:
        flag = definitions.flags_by_key.get(key)
        if not flag:
            return None

        response = None
        try:
            response = compute_flag_locally(
                flag,
                distinct_id,
                definitions,
                groups=groups,
                person_properties=person_properties,
                group_properties=group_properties,
            )
            self.log.debug(f"Successfully computed flag locally: {key} -> {response}")
        except InconclusiveMatchError as e:
            self.log.debug(f"Failed to compute flag {key} locally: {e}")
        except Exception as e:
            self.log.exception(
                f"[FEATURE FLAGS] Error while computing variant locally: {e}"
            )
            safe_call(
                self.on_error, Exception(f"Error computing flag locally: {key}: {e}")
            )
        return response

    def get_feature_flag_payload(
        self,
        key,
        distinct_id,
        *,
        match_value: Optional[FlagValue] = None,
        groups=None,
        person_properties=None,
        group_properties=None,
    ):
        """
        Get the decoded payload for the value a flag evaluates to.

        Payloads stored as JSON strings are decoded; anything that isn't
        valid JSON is returned as the raw string.

        Category:
            Feature Flags
        """
        flag_result = self.get_feature_flag_result(
            key,
            distinct_id,
            match_value=match_value,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
        )
        return flag_result.payload if flag_result else None

    def compute_flag_and_payload_locally(
        self, key: str, match_value: FlagValue
    ) -> Optional[FeatureFlagResult]:
        """
        Look up the payload for an already known flag value without evaluating the flag.

        Returns None if no definitions are loaded or the flag is unknown.
        Otherwise returns a result whose `payload` is None when the flag has
        no payload for `match_value`.
        """
        definitions = self._ensure_definitions()
        if definitions is None:
            return None
        flag = definitions.flags_by_key.get(key)
        if not flag:
            return None
        return FeatureFlagResult.from_value_and_payload(
            key, match_value, get_feature_flag_payload(flag, match_value)
        )

    def compute_feature_flag_payload_locally(self, key: str, match_value: FlagValue):
        result = self.compute_flag_and_payload_locally(key, match_value)
        return result.payload if result else None

    def get_all_flags(
        self,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        flag_keys_to_evaluate: Optional[List[str]] = None,
    ) -> Optional[Dict[str, FlagValue]]:
        """
        Get all locally computable feature flags for a user.

        Category:
            Feature Flags
        """
        response = self.get_all_flags_and_payloads(
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            flag_keys_to_evaluate=flag_keys_to_evaluate,
        )
        return response["featureFlags"]

    def get_all_flags_and_payloads(
        self,
        distinct_id,
        *,
        groups=None,
        person_properties=None,
        group_properties=None,
        flag_keys_to_evaluate: Optional[List[str]] = None,
    ) -> FlagsAndPayloads:
        """
        Evaluate every flag (or just `flag_keys_to_evaluate`) for a user.

        Each flag is evaluated on its own; one that can't be decided locally
        is left out of the result and sets `fallbackToFlags`, telling the
        caller the response is partial and should be merged with a server
        evaluation.

        Examples:
            ```python
            result = client.get_all_flags_and_payloads('distinct_id_of_your_user')
            if result["fallbackToFlags"]:
                ...
            ```

        Category:
            Feature Flags
        """
        if self.disabled:
            return {
                "featureFlags": None,
                "featureFlagPayloads": None,
                "fallbackToFlags": False,
            }

        person_properties, group_properties = (
            self._add_local_person_and_group_properties(
                distinct_id, groups or {}, person_properties, group_properties
            )
        )

        return self._get_all_flags_and_payloads_locally(
            distinct_id,
            groups=groups or {},
            person_properties=person_properties,
            group_properties=group_properties,
            flag_keys_to_evaluate=flag_keys_to_evaluate,
        )

    def _get_all_flags_and_payloads_locally(
        self,
        distinct_id: ID_TYPES,
        *,
        groups: Dict[str, Union[str, int]],
        person_properties=None,
        group_properties=None,
        flag_keys_to_evaluate: Optional[List[str]] = None,
        warn_on_unknown_groups=False,
    ) -> FlagsAndPayloads:
        flags: Dict[str, FlagValue] = {}
        payloads: Dict[str, Any] = {}

        definitions = self._ensure_definitions()
        if definitions is None or not definitions.flags:
            return {
                "featureFlags": flags,
                "featureFlagPayloads": payloads,
                "fallbackToFlags": True,
            }

        if flag_keys_to_evaluate is not None:
            flags_to_evaluate = [
                definitions.flags_by_key[key]
                for key in flag_keys_to_evaluate
                if key in definitions.flags_by_key
            ]
        else:
            flags_to_evaluate = list(definitions.flags)

        fallback_to_flags = False
        # shared so flag dependencies are evaluated once per call
        evaluation_cache: Dict[str, Optional[FlagValue]] = {}

        for flag in flags_to_evaluate:
            try:
                flags[flag.key] = compute_flag_locally(
                    flag,
                    distinct_id,
                    definitions,
                    groups=groups,
                    person_properties=person_properties,
                    group_properties=group_properties,
                    evaluation_cache=evaluation_cache,
                    warn_on_unknown_groups=warn_on_unknown_groups,
                )
                matched_payload = get_feature_flag_payload(flag, flags[flag.key])
                if matched_payload is not None:
                    payloads[flag.key] = matched_payload
            except InconclusiveMatchError as e:
                # No need to log this beyond debug, it just means asking the server
                self.log.debug(f"Failed to compute flag {flag.key} locally: {e}")
                fallback_to_flags = True
            except Exception as e:
                self.log.exception(
                    f"[FEATURE FLAGS] Error while computing variant and payload: {e}"
                )
                safe_call(
                    self.on_error,
                    Exception(f"Error computing flag locally: {flag.key}: {e}"),
                )
                fallback_to_flags = True

        return {
            "featureFlags": flags,
            "featureFlagPayloads": payloads,
            "fallbackToFlags": fallback_to_flags,
        }

    def _add_local_person_and_group_properties(
        self, distinct_id, groups, person_properties, group_properties
    ):
        all_person_properties = {
            "distinct_id": distinct_id,
            **(person_properties or {}),
        }

        all_group_properties = {}
        if groups:
            for group_name in groups:
                all_group_properties[group_name] = {
                    "$group_key": groups[group_name],
                    **((group_properties or {}).get(group_name) or {}),
                }

        return all_person_properties, all_group_properties

    def stop_poller(self):
        """Stop refreshing definitions. Already loaded definitions stay usable."""
        self.flag_poller.stop_poller()

    def shutdown(self):
        """
        Stop the background poller and release the definitions cache provider.

        Examples:
            ```python
            client.shutdown()
            ```
        """
        self.stop_poller()
