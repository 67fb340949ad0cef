import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from dateutil.tz import tzutc

from flagcore.flag_definition_cache import (
    FlagDefinitionCacheProvider,
    from_cache_data,
    to_cache_data,
)
from flagcore.poller import MIN_POLL_INTERVAL, Poller
from flagcore.request import (
    APIError,
    MalformedResponseError,
    QuotaLimitError,
    local_evaluation_definitions,
)
from flagcore.types import FlagDefinitions
from flagcore.utils import safe_call

MAX_POLL_INTERVAL = timedelta(seconds=60)


class ClientError(Exception):
    """The definitions endpoint rejected us: bad key, missing permission or rate limit."""


class FeatureFlagsPoller(object):
    """
    Owns the flag definitions used for local evaluation and keeps them fresh.

    Definitions are held as one immutable `FlagDefinitions` snapshot. Every
    successful poll builds a new snapshot and publishes it in a single
    assignment under `_definitions_lock`; evaluation code grabs the current
    snapshot once and reads only from it, so it never sees flags from one
    response combined with cohorts from another.

    Responses are classified by status:

    - 200: replace the snapshot, clear backoff, call `on_load(count)`.
      A body that is not JSON or has no `flags` is reported to `on_error` and ignored.
    - 304: definitions unchanged (we sent `If-None-Match`), clear backoff.
    - 401, 403, 429: report a `ClientError` and back off, doubling the poll
      interval up to 60 seconds. These never count as a successful load,
      so `load_feature_flags()` keeps retrying once the problem is fixed.
    - 402: quota exceeded, drop every definition.
    - anything else, including network errors: keep what we have.
    """

    log = logging.getLogger("flagcore")

    def __init__(
        self,
        personal_api_key: Optional[str],
        project_api_key: str,
        host: Optional[str] = None,
        poll_interval: float = 30,
        timeout: Optional[float] = 10,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_load: Optional[Callable[[int], None]] = None,
        custom_headers: Optional[Dict[str, str]] = None,
        cache_provider: Optional[FlagDefinitionCacheProvider] = None,
    ):
        self.personal_api_key = personal_api_key
        self.project_api_key = project_api_key
        self.host = host
        self.poll_interval = max(timedelta(seconds=poll_interval), MIN_POLL_INTERVAL)
        self.timeout = timeout
        self.on_error = on_error
        self.on_load = on_load
        self.custom_headers = custom_headers
        self.cache_provider = cache_provider

        self._definitions = FlagDefinitions()
        self._definitions_lock = threading.Lock()
        self._load_lock = threading.Lock()
        self.loaded_successfully_once = False
        self.flags_etag: Optional[str] = None
        self.should_begin_exponential_backoff = False
        self.back_off_count = 0
        self.next_fetch_allowed_at: Optional[datetime] = None
        self.last_feature_flag_poll: Optional[datetime] = None
        self.poller: Optional[Poller] = None

    @property
    def definitions(self) -> FlagDefinitions:
        with self._definitions_lock:
            return self._definitions

    def _update_definitions(self, definitions: FlagDefinitions):
        with self._definitions_lock:
            self._definitions = definitions

    @property
    def feature_flags(self):
        return list(self.definitions.raw_flags)

    @feature_flags.setter
    def feature_flags(self, flags):
        """
        Replace the flag list directly, keeping the current group types and cohorts.

        Counts as a successful load. Handy for bootstrapping and tests.
        """
        current = self.definitions
        self._update_definitions(
            FlagDefinitions.from_json(
                flags, current.raw_group_type_mapping, current.raw_cohorts
            )
        )
        self.loaded_successfully_once = True

    def set_definitions(self, flags, group_type_mapping=None, cohorts=None):
        self._update_definitions(
            FlagDefinitions.from_json(flags, group_type_mapping, cohorts)
        )
        self.loaded_successfully_once = True

    def start(self):
        """Load definitions on a background thread now, then every poll interval."""
        if self.poller and self.poller.is_alive():
            return
        self.poller = Poller(
            interval=self.get_polling_interval,
            execute=self.load_feature_flags,
            force_reload=True,
            run_immediately=True,
        )
        self.poller.start()

    def is_local_evaluation_ready(self) -> bool:
        return self.loaded_successfully_once and len(self.definitions.flags) > 0

    def load_feature_flags(self, force_reload=False):
        if self.loaded_successfully_once and not force_reload:
            return

        # The poller passes force_reload after already waiting out the backoff
        if (
            not force_reload
            and self.next_fetch_allowed_at
            and datetime.now(tz=tzutc()) < self.next_fetch_allowed_at
        ):
            self.log.debug("[FEATURE FLAGS] Skipping fetch, in backoff period")
            return

        if not self.personal_api_key:
            self.log.warning(
                "[FEATURE FLAGS] You have to specify a personal_api_key to use feature flags."
            )
            return

        with self._load_lock:
            # another caller may have finished loading while we waited
            if self.loaded_successfully_once and not force_reload:
                return
            self._load_feature_flags()

    def get_polling_interval(self) -> timedelta:
        """
        Doubles the poll interval for every consecutive rejected request, up to 60 seconds.
        """
        if not self.should_begin_exponential_backoff:
            return self.poll_interval
        return min(MAX_POLL_INTERVAL, self.poll_interval * (2**self.back_off_count))

    def _begin_backoff(self):
        self.should_begin_exponential_backoff = True
        self.back_off_count += 1
        self.next_fetch_allowed_at = (
            datetime.now(tz=tzutc()) + self.get_polling_interval()
        )

    def _clear_backoff(self):
        self.should_begin_exponential_backoff = False
        self.back_off_count = 0
        self.next_fetch_allowed_at = None

    def _report_error(self, error: Exception):
        self.log.error(f"[FEATURE FLAGS] {error}")
        safe_call(self.on_error, error)

    def _load_from_cache(self, debug_message: str) -> bool:
        if not self.cache_provider:
            return False

        try:
            cached = self.cache_provider.get_flag_definitions()
            if not cached:
                return False
            definitions = from_cache_data(cached)
        except Exception as e:
            self._report_error(Exception(f"Failed to load from cache: {e}"))
            return False

        self._update_definitions(definitions)
        self.loaded_successfully_once = True
        self.log.debug(f"[FEATURE FLAGS] {debug_message} ({len(definitions.flags)} flags)")
        safe_call(self.on_load, len(definitions.flags))
        self._warn_about_experience_continuity_flags(definitions)
        return True

    def _load_feature_flags(self):
        try:
            self._fetch_feature_flags()
        except QuotaLimitError:
            self.log.warning(
                "[FEATURE FLAGS] Feature flags quota limit exceeded - unsetting all local flags. Learn more about billing limits at https://posthog.com/docs/billing/limits-alerts"
            )
            self._update_definitions(FlagDefinitions())
        except MalformedResponseError as e:
            self._report_error(
                Exception(f"Invalid response when getting feature flags: {e}")
            )
        except APIError as e:
            if e.status == 401:
                self._begin_backoff()
                self._report_error(
                    ClientError(
                        f"Your project key or personal API key is invalid. Setting next polling interval to {self.get_polling_interval().total_seconds()}s. More information: https://posthog.com/docs/api/overview"
                    )
                )
            elif e.status == 403:
                self._begin_backoff()
                self._report_error(
                    ClientError(
                        f"Your personal API key does not have permission to fetch feature flag definitions for local evaluation. Setting next polling interval to {self.get_polling_interval().total_seconds()}s. Are you sure you're using the correct personal and Project API key pair? More information: https://posthog.com/docs/api/overview"
                    )
                )
            elif e.status == 429:
                self._begin_backoff()
                self._report_error(
                    ClientError(
                        f"You are being rate limited. Setting next polling interval to {self.get_polling_interval().total_seconds()}s. More information: https://posthog.com/docs/api#rate-limiting"
                    )
                )
            else:
                self.log.error(f"[FEATURE FLAGS] Error loading feature flags: {e}")
        except Exception as e:
            self.log.warning(
                "[FEATURE FLAGS] Fetching feature flags failed with following error. We will retry in %s seconds."
                % self.get_polling_interval().total_seconds()
            )
            self.log.warning(e)

        self.last_feature_flag_poll = datetime.now(tz=tzutc())

    def _fetch_feature_flags(self):
        should_fetch = True
        if self.cache_provider:
            try:
                should_fetch = self.cache_provider.should_fetch_flag_definitions()
            except Exception as e:
                # default to fetching
                self._report_error(
                    Exception(f"Error in should_fetch_flag_definitions: {e}")
                )

        if not should_fetch:
            if self._load_from_cache("Loaded flags from cache (skipped fetch)"):
                return
            if self.loaded_successfully_once:
                # keep stale definitions rather than overriding the fetch decision
                return
            # nothing cached and nothing loaded: fetch anyway, otherwise local
            # evaluation can never start

        response = local_evaluation_definitions(
            self.personal_api_key,
            self.project_api_key,
            self.host,
            timeout=self.timeout,
            etag=self.flags_etag,
            headers=self.custom_headers,
        )

        if response.not_modified:
            self.log.debug("[FEATURE FLAGS] Flags not modified (304), using cached data")
            self.flags_etag = response.etag
            self.loaded_successfully_once = True
            self._clear_backoff()
            return

        data = response.data
        if not isinstance(data, dict) or "flags" not in data:
            self._report_error(
                Exception(
                    f"Invalid response when getting feature flags: {json.dumps(data)}"
                )
            )
            return

        try:
            definitions = FlagDefinitions.from_json(
                data["flags"], data.get("group_type_mapping"), data.get("cohorts")
            )
        except Exception as e:
            self._report_error(Exception(f"Invalid feature flag definitions: {e}"))
            return

        self.flags_etag = response.etag
        self._update_definitions(definitions)
        self.loaded_successfully_once = True
        self._clear_backoff()

        if self.cache_provider and should_fetch:
            # skipped when we fetched after a cache miss, we may not hold the lock
            try:
                self.cache_provider.on_flag_definitions_received(
                    to_cache_data(definitions)
                )
            except Exception as e:
                self._report_error(Exception(f"Failed to store in cache: {e}"))

        self.log.debug(
            f"[FEATURE FLAGS] Loaded {len(definitions.flags)} feature flag definitions"
        )
        safe_call(self.on_load, len(definitions.flags))
        self._warn_about_experience_continuity_flags(definitions)

    def _warn_about_experience_continuity_flags(self, definitions: FlagDefinitions):
        keys = [
            flag.key for flag in definitions.flags if flag.ensure_experience_continuity
        ]
        if keys:
            self.log.warning(
                f"[FEATURE FLAGS] You are using local evaluation but {len(keys)} flag(s) have experience continuity enabled: {', '.join(keys)}. "
                "These flags can't be evaluated locally and every evaluation will need a server request."
            )

    def stop_poller(self):
        if self.poller:
            self.poller.stop()
            self.poller = None

        if self.cache_provider:
            try:
                self.cache_provider.shutdown()
            except Exception as e:
                self._report_error(Exception(f"Error during cache shutdown: {e}"))
