from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, TypedDict, Union

FlagValue = Union[bool, str]


class Operator(str, Enum):
    EXACT = "exact"
    IS_NOT = "is_not"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    ICONTAINS = "icontains"
    NOT_ICONTAINS = "not_icontains"
    REGEX = "regex"
    NOT_REGEX = "not_regex"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IS_DATE_BEFORE = "is_date_before"
    IS_DATE_AFTER = "is_date_after"
    COHORT = "cohort"
    FLAG_EVALUATES_TO = "flag_evaluates_to"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["Operator"]:
        """Returns None for operators this library doesn't know about."""
        try:
            return cls(raw or "exact")
        except ValueError:
            return None


COMPARISON_OPERATORS = (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE)
DATE_OPERATORS = (Operator.IS_DATE_BEFORE, Operator.IS_DATE_AFTER)


@dataclass(frozen=True)
class PropertyFilter:
    """A single predicate clause, e.g. `{"key": "email", "operator": "icontains", "value": "@example.com"}`."""

    key: str
    value: Any
    operator: Optional[Operator]
    raw_operator: str
    type: Optional[str] = None
    negation: bool = False
    dependency_chain: Optional[Tuple[str, ...]] = None

    @property
    def is_cohort(self) -> bool:
        return self.type == "cohort" or self.operator == Operator.COHORT

    @property
    def is_flag_dependency(self) -> bool:
        return self.type == "flag"

    @classmethod
    def from_json(cls, resp: Mapping[str, Any]) -> "PropertyFilter":
        raw_operator = resp.get("operator") or "exact"
        chain = resp.get("dependency_chain")
        return cls(
            key=resp.get("key"),
            value=resp.get("value"),
            operator=Operator.parse(raw_operator),
            raw_operator=raw_operator,
            type=resp.get("type"),
            negation=bool(resp.get("negation", False)),
            dependency_chain=tuple(chain) if chain is not None else None,
        )


@dataclass(frozen=True)
class PropertyGroup:
    """
    A node of a cohort definition.

    Cohort definitions nest arbitrarily: a group's values are either further
    groups or leaf property filters, never a mix. The shape is decided once,
    when the definition is parsed.
    """

    type: str = "AND"
    groups: Tuple["PropertyGroup", ...] = ()
    filters: Tuple[PropertyFilter, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.groups and not self.filters

    @classmethod
    def from_json(cls, resp: Optional[Mapping[str, Any]]) -> "PropertyGroup":
        if not resp:
            return cls()

        group_type = resp.get("type") or "AND"
        values = resp.get("values") or []
        if not values:
            return cls(type=group_type)

        if "values" in values[0]:
            return cls(
                type=group_type,
                groups=tuple(cls.from_json(value) for value in values),
            )
        return cls(
            type=group_type,
            filters=tuple(PropertyFilter.from_json(value) for value in values),
        )


@dataclass(frozen=True)
class FlagCondition:
    properties: Tuple[PropertyFilter, ...] = ()
    rollout_percentage: Optional[float] = None
    variant: Optional[str] = None

    @classmethod
    def from_json(cls, resp: Mapping[str, Any]) -> "FlagCondition":
        return cls(
            properties=tuple(
                PropertyFilter.from_json(prop) for prop in resp.get("properties") or []
            ),
            rollout_percentage=resp.get("rollout_percentage"),
            variant=resp.get("variant"),
        )


@dataclass(frozen=True)
class MultivariateVariant:
    key: str
    rollout_percentage: float

    @classmethod
    def from_json(cls, resp: Mapping[str, Any]) -> "MultivariateVariant":
        return cls(
            key=resp["key"],
            rollout_percentage=resp.get("rollout_percentage") or 0,
        )


@dataclass(frozen=True)
class FlagDefinition:
    key: str
    active: bool = True
    ensure_experience_continuity: bool = False
    conditions: Tuple[FlagCondition, ...] = ()
    aggregation_group_type_index: Optional[int] = None
    variants: Tuple[MultivariateVariant, ...] = ()
    payloads: Mapping[str, Any] = field(default_factory=dict)

    @property
    def variant_keys(self) -> List[str]:
        return [variant.key for variant in self.variants]

    @classmethod
    def from_json(cls, resp: Mapping[str, Any]) -> "FlagDefinition":
        # Some filters can be explicitly set to null
        filters = resp.get("filters") or {}
        multivariate = filters.get("multivariate") or {}
        return cls(
            key=resp["key"],
            active=bool(resp.get("active")),
            ensure_experience_continuity=bool(
                resp.get("ensure_experience_continuity", False)
            ),
            conditions=tuple(
                FlagCondition.from_json(condition)
                for condition in filters.get("groups") or []
            ),
            aggregation_group_type_index=filters.get("aggregation_group_type_index"),
            variants=tuple(
                MultivariateVariant.from_json(variant)
                for variant in multivariate.get("variants") or []
            ),
            payloads=dict(filters.get("payloads") or {}),
        )


@dataclass(frozen=True)
class FlagDefinitions:
    """
    Everything local evaluation reads, loaded together from one response.

    A snapshot is never mutated once published. The poller replaces it
    wholesale, so a reader holding one always sees a consistent set of
    flags, group types and cohorts.
    """

    flags: Tuple[FlagDefinition, ...] = ()
    flags_by_key: Mapping[str, FlagDefinition] = field(default_factory=dict)
    group_type_mapping: Mapping[str, str] = field(default_factory=dict)
    cohorts: Mapping[str, PropertyGroup] = field(default_factory=dict)
    raw_flags: Tuple[Dict[str, Any], ...] = ()
    raw_group_type_mapping: Mapping[str, str] = field(default_factory=dict)
    raw_cohorts: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(
        cls,
        flags: Optional[List[Dict[str, Any]]],
        group_type_mapping: Optional[Mapping[str, str]] = None,
        cohorts: Optional[Mapping[str, Any]] = None,
    ) -> "FlagDefinitions":
        raw_flags = tuple(flag for flag in flags or [] if flag.get("key") is not None)
        parsed = tuple(FlagDefinition.from_json(flag) for flag in raw_flags)
        return cls(
            flags=parsed,
            flags_by_key={flag.key: flag for flag in parsed},
            group_type_mapping=dict(group_type_mapping or {}),
            cohorts={
                str(cohort_id): PropertyGroup.from_json(group)
                for cohort_id, group in (cohorts or {}).items()
            },
            raw_flags=raw_flags,
            raw_group_type_mapping=dict(group_type_mapping or {}),
            raw_cohorts=dict(cohorts or {}),
        )


@dataclass(frozen=True)
class FeatureFlagResult:
    """The value of a locally evaluated flag together with its decoded payload."""

    key: str
    enabled: bool
    variant: Optional[str]
    payload: Optional[Any]

    def get_value(self) -> FlagValue:
        return self.variant or self.enabled

    @classmethod
    def from_value_and_payload(
        cls, key: str, value: FlagValue, payload: Any
    ) -> "FeatureFlagResult":
        enabled, variant = (True, value) if isinstance(value, str) else (value, None)
        return cls(key=key, enabled=enabled, variant=variant, payload=payload)


class FlagsAndPayloads(TypedDict, total=True):
    featureFlags: Optional[Dict[str, FlagValue]]
    featureFlagPayloads: Optional[Dict[str, Any]]
    fallbackToFlags: bool
