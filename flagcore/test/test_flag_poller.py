import unittest
from datetime import datetime, timedelta

import mock
import requests
from dateutil.tz import tzutc
from freezegun import freeze_time

from flagcore.flag_poller import ClientError, FeatureFlagsPoller
from flagcore.request import (
    APIError,
    GetResponse,
    MalformedResponseError,
    QuotaLimitError,
)
from flagcore.test.test_utils import FAKE_TEST_API_KEY


def flag_json(key, rollout_percentage=100, **kwargs):
    return {
        "id": 1,
        "key": key,
        "active": True,
        "filters": {
            "groups": [{"properties": [], "rollout_percentage": rollout_percentage}]
        },
        **kwargs,
    }


def definitions_response(flags, group_type_mapping=None, cohorts=None, etag=None):
    return GetResponse(
        data={
            "flags": flags,
            "group_type_mapping": group_type_mapping or {},
            "cohorts": cohorts or {},
        },
        etag=etag,
    )


class InMemoryCacheProvider:
    def __init__(self, stored=None, should_fetch=True):
        self.stored = stored
        self.should_fetch = should_fetch
        self.received = []
        self.shutdown_calls = 0

    def get_flag_definitions(self):
        return self.stored

    def should_fetch_flag_definitions(self):
        return self.should_fetch

    def on_flag_definitions_received(self, data):
        self.received.append(data)
        self.stored = data

    def shutdown(self):
        self.shutdown_calls += 1


@mock.patch("flagcore.flag_poller.local_evaluation_definitions")
class TestFeatureFlagsPoller(unittest.TestCase):
    def setUp(self):
        self.errors = []
        self.loads = []
        self.poller = FeatureFlagsPoller(
            "personal-key",
            FAKE_TEST_API_KEY,
            poll_interval=5,
            on_error=self.errors.append,
            on_load=self.loads.append,
        )

    def test_successful_load_replaces_snapshot(self, patch_get):
        patch_get.return_value = definitions_response(
            [flag_json("a"), flag_json("b")],
            group_type_mapping={"0": "company"},
            cohorts={"1": {"type": "AND", "values": []}},
        )
        self.poller.load_feature_flags()

        definitions = self.poller.definitions
        self.assertEqual([flag.key for flag in definitions.flags], ["a", "b"])
        self.assertEqual(definitions.group_type_mapping, {"0": "company"})
        self.assertIn("1", definitions.cohorts)
        self.assertTrue(self.poller.loaded_successfully_once)
        self.assertTrue(self.poller.is_local_evaluation_ready())
        self.assertEqual(self.loads, [2])
        self.assertEqual(self.errors, [])

        patch_get.assert_called_once_with(
            "personal-key",
            FAKE_TEST_API_KEY,
            None,
            timeout=10,
            etag=None,
            headers=None,
        )

        # nothing from the previous response survives
        patch_get.return_value = definitions_response([flag_json("c")])
        self.poller.load_feature_flags(force_reload=True)

        definitions = self.poller.definitions
        self.assertEqual([flag.key for flag in definitions.flags], ["c"])
        self.assertEqual(definitions.group_type_mapping, {})
        self.assertEqual(definitions.cohorts, {})
        self.assertEqual(self.loads, [2, 1])

    def test_loads_once_unless_forced(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")])

        self.poller.load_feature_flags()
        self.poller.load_feature_flags()
        self.assertEqual(patch_get.call_count, 1)

        self.poller.load_feature_flags(force_reload=True)
        self.assertEqual(patch_get.call_count, 2)

    def test_empty_flags_are_loaded_but_not_ready(self, patch_get):
        patch_get.return_value = definitions_response([])
        self.poller.load_feature_flags()

        self.assertTrue(self.poller.loaded_successfully_once)
        self.assertFalse(self.poller.is_local_evaluation_ready())
        self.assertEqual(self.loads, [0])

    def test_missing_personal_api_key(self, patch_get):
        poller = FeatureFlagsPoller(None, FAKE_TEST_API_KEY)
        with self.assertLogs("flagcore", level="WARNING") as logs:
            poller.load_feature_flags()

        patch_get.assert_not_called()
        self.assertFalse(poller.loaded_successfully_once)
        self.assertIn("personal_api_key", logs.output[0])

    def test_response_without_flags_is_ignored(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")])
        self.poller.load_feature_flags()

        patch_get.return_value = GetResponse(data={"group_type_mapping": {}})
        with self.assertLogs("flagcore", level="ERROR"):
            self.poller.load_feature_flags(force_reload=True)

        self.assertEqual(len(self.errors), 1)
        self.assertIn("Invalid response when getting feature flags", str(self.errors[0]))
        self.assertEqual([flag.key for flag in self.poller.definitions.flags], ["a"])

    def test_malformed_flag_is_reported(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")])
        self.poller.load_feature_flags()

        patch_get.return_value = GetResponse(
            data={"flags": [{"key": "bad", "filters": {"multivariate": {"variants": [{}]}}}]}
        )
        with self.assertLogs("flagcore", level="ERROR"):
            self.poller.load_feature_flags(force_reload=True)

        self.assertIn("Invalid feature flag definitions", str(self.errors[0]))
        self.assertEqual([flag.key for flag in self.poller.definitions.flags], ["a"])

    def test_not_modified_keeps_definitions(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")], etag='"abc"')
        self.poller.load_feature_flags()
        self.assertEqual(self.poller.flags_etag, '"abc"')

        patch_get.return_value = GetResponse(data=None, etag='"def"', not_modified=True)
        self.poller.load_feature_flags(force_reload=True)

        self.assertEqual(patch_get.call_args[1]["etag"], '"abc"')
        self.assertEqual(self.poller.flags_etag, '"def"')
        self.assertEqual([flag.key for flag in self.poller.definitions.flags], ["a"])
        # on_load only fires for fresh definitions
        self.assertEqual(self.loads, [1])

    def test_quota_limit_clears_definitions(self, patch_get):
        patch_get.return_value = definitions_response(
            [flag_json("a")], group_type_mapping={"0": "company"}
        )
        self.poller.load_feature_flags()

        patch_get.side_effect = QuotaLimitError(402, "Feature flags quota limited")
        with self.assertLogs("flagcore", level="WARNING") as logs:
            self.poller.load_feature_flags(force_reload=True)

        self.assertIn("quota limit exceeded", logs.output[0])
        self.assertEqual(self.poller.definitions.flags, ())
        self.assertEqual(self.poller.definitions.group_type_mapping, {})
        self.assertFalse(self.poller.is_local_evaluation_ready())

    def test_server_error_keeps_definitions(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")])
        self.poller.load_feature_flags()

        patch_get.side_effect = APIError(500, "boom")
        with self.assertLogs("flagcore", level="ERROR"):
            self.poller.load_feature_flags(force_reload=True)

        self.assertEqual([flag.key for flag in self.poller.definitions.flags], ["a"])
        self.assertFalse(self.poller.should_begin_exponential_backoff)
        self.assertEqual(self.errors, [])

    def test_undecodable_response_is_reported(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")])
        self.poller.load_feature_flags()

        patch_get.side_effect = MalformedResponseError(200, "Invalid JSON body")
        with self.assertLogs("flagcore", level="ERROR"):
            self.poller.load_feature_flags(force_reload=True)

        self.assertEqual([flag.key for flag in self.poller.definitions.flags], ["a"])
        self.assertEqual(len(self.errors), 1)
        self.assertIn(
            "Invalid response when getting feature flags", str(self.errors[0])
        )

    def test_network_error_keeps_definitions(self, patch_get):
        patch_get.return_value = definitions_response([flag_json("a")])
        self.poller.load_feature_flags()

        patch_get.side_effect = ConnectionError("unreachable")
        with self.assertLogs("flagcore", level="WARNING"):
            self.poller.load_feature_flags(force_reload=True)

        self.assertEqual([flag.key for flag in self.poller.definitions.flags], ["a"])
        self.assertIsNotNone(self.poller.last_feature_flag_poll)

    def test_unauthorized_backs_off_and_never_counts_as_loaded(self, patch_get):
        patch_get.side_effect = APIError(401, "Invalid API key")

        with self.assertLogs("flagcore", level="ERROR"):
            self.poller.load_feature_flags()

        self.assertFalse(self.poller.loaded_successfully_once)
        self.assertTrue(self.poller.should_begin_exponential_backoff)
        self.assertEqual(self.poller.back_off_count, 1)
        self.assertEqual(self.poller.get_polling_interval(), timedelta(seconds=10))
        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], ClientError)
        self.assertIn("invalid", str(self.errors[0]))
        self.assertIn("10.0s", str(self.errors[0]))

    def test_forbidden_and_rate_limited_back_off(self, patch_get):
        for status, message in ((403, "permission"), (429, "rate limited")):
            poller = FeatureFlagsPoller(
                "personal-key",
                FAKE_TEST_API_KEY,
                poll_interval=5,
                on_error=self.errors.append,
            )
            patch_get.side_effect = APIError(status, "nope")
            with self.assertLogs("flagcore", level="ERROR"):
                poller.load_feature_flags()

            self.assertTrue(poller.should_begin_exponential_backoff)
            self.assertFalse(poller.loaded_successfully_once)
            self.assertIsInstance(self.errors[-1], ClientError)
            self.assertIn(message, str(self.errors[-1]))

    def test_backoff_doubles_up_to_a_minute(self, patch_get):
        patch_get.side_effect = APIError(429, "slow down")

        intervals = []
        with self.assertLogs("flagcore", level="ERROR"):
            for _ in range(6):
                self.poller.load_feature_flags(force_reload=True)
                intervals.append(self.poller.get_polling_interval().total_seconds())

        self.assertEqual(intervals, [10, 20, 40, 60, 60, 60])

    def test_success_clears_backoff(self, patch_get):
        patch_get.side_effect = APIError(401, "Invalid API key")
        with self.assertLogs("flagcore", level="ERROR"):
            self.poller.load_feature_flags()
        self.assertIsNotNone(self.poller.next_fetch_allowed_at)

        patch_get.side_effect = None
        patch_get.return_value = definitions_response([flag_json("a")])
        self.poller.load_feature_flags(force_reload=True)

        self.assertFalse(self.poller.should_begin_exponential_backoff)
        self.assertEqual(self.poller.back_off_count, 0)
        self.assertIsNone(self.poller.next_fetch_allowed_at)
        self.assertEqual(self.poller.get_polling_interval(), timedelta(seconds=5))

    def test_on_demand_load_respects_backoff_window(self, patch_get):
        patch_get.side_effect = APIError(401, "Invalid API key")
        with freeze_time("2024-01-01T00:00:00Z") as frozen:
            with self.assertLogs("flagcore", level="ERROR"):
                self.poller.load_feature_flags()
            self.assertEqual(
                self.poller.next_fetch_allowed_at,
                datetime(2024, 1, 1, 0, 0, 10, tzinfo=tzutc()),
            )

            self.poller.load_feature_flags()
            self.assertEqual(patch_get.call_count, 1)

            frozen.tick(timedelta(seconds=11))
            with self.assertLogs("flagcore", level="ERROR"):
                self.poller.load_feature_flags()
            self.assertEqual(patch_get.call_count, 2)

    def test_on_error_exceptions_are_contained(self, patch_get):
        def on_error(error):
            raise RuntimeError("callback failed")

        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY, on_error=on_error)
        patch_get.side_effect = APIError(401, "Invalid API key")
        with self.assertLogs("flagcore", level="ERROR") as logs:
            poller.load_feature_flags()

        self.assertTrue(any("callback failed" in line for line in logs.output))

    def test_experience_continuity_warning(self, patch_get):
        patch_get.return_value = definitions_response(
            [flag_json("a", ensure_experience_continuity=True), flag_json("b")]
        )
        with self.assertLogs("flagcore", level="WARNING") as logs:
            self.poller.load_feature_flags()

        self.assertTrue(any("experience continuity" in line for line in logs.output))
        self.assertTrue(any(": a." in line for line in logs.output))

    def test_feature_flags_setter_keeps_mapping_and_cohorts(self, patch_get):
        self.poller.set_definitions(
            [flag_json("a")], {"0": "company"}, {"1": {"type": "AND", "values": []}}
        )
        self.poller.feature_flags = [flag_json("b")]

        self.assertEqual(self.poller.feature_flags, [flag_json("b")])
        self.assertEqual(self.poller.definitions.group_type_mapping, {"0": "company"})
        self.assertIn("1", self.poller.definitions.cohorts)
        self.assertTrue(self.poller.loaded_successfully_once)
        patch_get.assert_not_called()

    def test_custom_headers_and_timeout_are_forwarded(self, patch_get):
        poller = FeatureFlagsPoller(
            "personal-key",
            FAKE_TEST_API_KEY,
            host="https://flags.example.com",
            timeout=3,
            custom_headers={"X-Custom": "yes"},
        )
        patch_get.return_value = definitions_response([])
        poller.load_feature_flags()

        patch_get.assert_called_once_with(
            "personal-key",
            FAKE_TEST_API_KEY,
            "https://flags.example.com",
            timeout=3,
            etag=None,
            headers={"X-Custom": "yes"},
        )

    def test_poll_interval_has_a_floor(self, patch_get):
        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY, poll_interval=0)
        self.assertEqual(poller.get_polling_interval(), timedelta(milliseconds=100))


class TestNonJsonResponse(unittest.TestCase):
    @mock.patch("flagcore.request._session.get")
    def test_non_json_body_keeps_definitions(self, mock_get):
        response = requests.Response()
        response.status_code = 200
        response._content = b"<html>not json</html>"
        mock_get.return_value = response

        errors = []
        poller = FeatureFlagsPoller(
            "personal-key", FAKE_TEST_API_KEY, on_error=errors.append
        )
        poller.set_definitions([flag_json("a")])

        with self.assertLogs("flagcore", level="ERROR"):
            poller.load_feature_flags(force_reload=True)

        self.assertEqual([flag.key for flag in poller.definitions.flags], ["a"])
        self.assertEqual(len(errors), 1)
        self.assertIn("Invalid response when getting feature flags", str(errors[0]))


@mock.patch("flagcore.flag_poller.local_evaluation_definitions")
class TestFlagDefinitionCacheProvider(unittest.TestCase):
    cached = {
        "flags": [flag_json("cached-flag")],
        "group_type_mapping": {"0": "company"},
        "cohorts": {},
    }

    def test_received_definitions_are_stored(self, patch_get):
        cache = InMemoryCacheProvider()
        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY, cache_provider=cache)
        patch_get.return_value = definitions_response(
            [flag_json("a")], group_type_mapping={"0": "company"}
        )
        poller.load_feature_flags()

        self.assertEqual(
            cache.received,
            [
                {
                    "flags": [flag_json("a")],
                    "group_type_mapping": {"0": "company"},
                    "cohorts": {},
                }
            ],
        )

    def test_skipped_fetch_loads_from_cache(self, patch_get):
        loads = []
        cache = InMemoryCacheProvider(stored=self.cached, should_fetch=False)
        poller = FeatureFlagsPoller(
            "personal-key", FAKE_TEST_API_KEY, cache_provider=cache, on_load=loads.append
        )
        poller.load_feature_flags()

        patch_get.assert_not_called()
        self.assertEqual(
            [flag.key for flag in poller.definitions.flags], ["cached-flag"]
        )
        self.assertEqual(poller.definitions.group_type_mapping, {"0": "company"})
        self.assertTrue(poller.is_local_evaluation_ready())
        self.assertEqual(loads, [1])
        self.assertEqual(cache.received, [])

    def test_empty_cache_fetches_when_nothing_is_loaded(self, patch_get):
        cache = InMemoryCacheProvider(stored=None, should_fetch=False)
        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY, cache_provider=cache)
        patch_get.return_value = definitions_response([flag_json("a")])
        poller.load_feature_flags()

        patch_get.assert_called_once()
        self.assertEqual([flag.key for flag in poller.definitions.flags], ["a"])
        # another process owns writing to the cache
        self.assertEqual(cache.received, [])

    def test_empty_cache_keeps_loaded_definitions(self, patch_get):
        cache = InMemoryCacheProvider(stored=None, should_fetch=True)
        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY, cache_provider=cache)
        patch_get.return_value = definitions_response([flag_json("a")])
        poller.load_feature_flags()

        cache.should_fetch = False
        cache.stored = None
        poller.load_feature_flags(force_reload=True)

        self.assertEqual(patch_get.call_count, 1)
        self.assertEqual([flag.key for flag in poller.definitions.flags], ["a"])

    def test_cache_errors_fall_back_to_fetching(self, patch_get):
        errors = []
        cache = mock.Mock()
        cache.should_fetch_flag_definitions.side_effect = RuntimeError("redis down")
        cache.on_flag_definitions_received.side_effect = RuntimeError("redis down")
        poller = FeatureFlagsPoller(
            "personal-key", FAKE_TEST_API_KEY, cache_provider=cache, on_error=errors.append
        )
        patch_get.return_value = definitions_response([flag_json("a")])

        with self.assertLogs("flagcore", level="ERROR"):
            poller.load_feature_flags()

        self.assertEqual([flag.key for flag in poller.definitions.flags], ["a"])
        self.assertEqual(len(errors), 2)
        self.assertIn("should_fetch_flag_definitions", str(errors[0]))
        self.assertIn("Failed to store in cache", str(errors[1]))

    def test_stop_poller_shuts_down_cache(self, patch_get):
        cache = InMemoryCacheProvider()
        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY, cache_provider=cache)
        poller.stop_poller()

        self.assertEqual(cache.shutdown_calls, 1)


class TestPollerThread(unittest.TestCase):
    @mock.patch("flagcore.flag_poller.Poller")
    def test_start_polls_with_force_reload(self, patch_poller):
        poller = FeatureFlagsPoller("personal-key", FAKE_TEST_API_KEY)
        poller.start()

        patch_poller.assert_called_once_with(
            interval=poller.get_polling_interval,
            execute=poller.load_feature_flags,
            force_reload=True,
            run_immediately=True,
        )
        patch_poller.return_value.start.assert_called_once()

        poller.stop_poller()
        patch_poller.return_value.stop.assert_called_once()
        self.assertIsNone(poller.poller)
