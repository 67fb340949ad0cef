"""
Pluggable storage for flag definitions shared between processes.

When several workers evaluate flags locally, each one polling the definitions
endpoint multiplies API traffic. A `FlagDefinitionCacheProvider` lets the
workers elect one fetcher per poll and share the result:

    class RedisDefinitions:
        def should_fetch_flag_definitions(self):
            return redis.set("flags:lock", "1", nx=True, ex=30)

        def get_flag_definitions(self):
            raw = redis.get("flags:data")
            return json.loads(raw) if raw else None

        def on_flag_definitions_received(self, data):
            redis.set("flags:data", json.dumps(data))
            redis.delete("flags:lock")

        def shutdown(self):
            redis.delete("flags:lock")

    client = Client(
        "<project_api_key>",
        personal_api_key="<personal_api_key>",
        flag_definition_cache_provider=RedisDefinitions(),
    )

Provider errors are reported through `on_error` and never stop polling or
evaluation. A failing `should_fetch_flag_definitions()` counts as "fetch", a
failing `get_flag_definitions()` falls through to the API, a failing
`on_flag_definitions_received()` leaves the freshly fetched definitions in
memory, and a failing `shutdown()` doesn't interrupt shutdown.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from typing_extensions import Required, TypedDict

from flagcore.types import FlagDefinitions


class FlagDefinitionCacheData(TypedDict):
    """The definitions payload in the same shape the local evaluation endpoint returns it."""

    flags: Required[List[Dict[str, Any]]]
    group_type_mapping: Required[Dict[str, str]]
    cohorts: Required[Dict[str, Any]]


@runtime_checkable
class FlagDefinitionCacheProvider(Protocol):
    def get_flag_definitions(self) -> Optional[FlagDefinitionCacheData]:
        """
        Return previously stored definitions, or None if there are none.

        Only called when `should_fetch_flag_definitions()` returned False.
        """
        ...

    def should_fetch_flag_definitions(self) -> bool:
        """Return True if this worker should call the API on this poll."""
        ...

    def on_flag_definitions_received(self, data: FlagDefinitionCacheData) -> None:
        """Store definitions this worker just fetched, and release any lock taken above."""
        ...

    def shutdown(self) -> None:
        """Release anything held by this worker. Called from `stop_poller()`."""
        ...


def to_cache_data(definitions: FlagDefinitions) -> FlagDefinitionCacheData:
    return {
        "flags": list(definitions.raw_flags),
        "group_type_mapping": dict(definitions.raw_group_type_mapping),
        "cohorts": dict(definitions.raw_cohorts),
    }


def from_cache_data(data: FlagDefinitionCacheData) -> FlagDefinitions:
    return FlagDefinitions.from_json(
        data.get("flags"), data.get("group_type_mapping"), data.get("cohorts")
    )
