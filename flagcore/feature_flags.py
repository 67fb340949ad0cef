import datetime
import hashlib
import json
import logging
import re
from typing import Any, Mapping, Optional

from dateutil import parser
from dateutil.relativedelta import relativedelta

from flagcore import utils
from flagcore.types import (
    COMPARISON_OPERATORS,
    DATE_OPERATORS,
    FlagCondition,
    FlagDefinition,
    FlagDefinitions,
    FlagValue,
    Operator,
    PropertyFilter,
    PropertyGroup,
)
from flagcore.utils import convert_to_datetime_aware, is_valid_regex

__LONG_SCALE__ = float(0xFFFFFFFFFFFFFFF)

log = logging.getLogger("flagcore")

NONE_VALUES_ALLOWED_OPERATORS = [Operator.IS_NOT]


class InconclusiveMatchError(Exception):
    pass


# This function takes a distinct_id and a feature flag key and returns a float between 0 and 1.
# Given the same distinct_id and key, it'll always return the same float. These floats are
# uniformly distributed between 0 and 1, so if we want to show this feature to 20% of traffic
# we can do _hash(key, distinct_id) < 0.2
def _hash(key: str, distinct_id: str, salt: str = "") -> float:
    hash_key = f"{key}.{distinct_id}{salt}"
    hash_val = int(hashlib.sha1(hash_key.encode("utf-8")).hexdigest()[:15], 16)
    return hash_val / __LONG_SCALE__


def get_matching_variant(flag: FlagDefinition, distinct_id) -> Optional[str]:
    hash_value = _hash(flag.key, distinct_id, salt="variant")
    for variant in variant_lookup_table(flag):
        if hash_value >= variant["value_min"] and hash_value < variant["value_max"]:
            return variant["key"]
    return None


def variant_lookup_table(flag: FlagDefinition):
    # declared order is authoritative, variants are never sorted by percentage
    lookup_table = []
    value_min = 0
    for variant in flag.variants:
        value_max = value_min + variant.rollout_percentage / 100
        lookup_table.append(
            {"value_min": value_min, "value_max": value_max, "key": variant.key}
        )
        value_min = value_max
    return lookup_table


def compute_flag_locally(
    flag: FlagDefinition,
    distinct_id,
    definitions: FlagDefinitions,
    *,
    groups=None,
    person_properties=None,
    group_properties=None,
    evaluation_cache=None,
    warn_on_unknown_groups=True,
) -> FlagValue:
    """
    Evaluate a single flag definition against the given properties.

    Raises:
        InconclusiveMatchError: when the flag can't be decided without the server.
    """
    groups = groups or {}
    person_properties = person_properties or {}
    group_properties = group_properties or {}

    if flag.ensure_experience_continuity:
        raise InconclusiveMatchError("Flag has experience continuity enabled")

    if not flag.active:
        return False

    if evaluation_cache is None:
        evaluation_cache = {}

    aggregation_group_type_index = flag.aggregation_group_type_index
    if aggregation_group_type_index is not None:
        group_name = definitions.group_type_mapping.get(
            str(aggregation_group_type_index)
        )

        if not group_name:
            log.warning(
                f"[FEATURE FLAGS] Unknown group type index {aggregation_group_type_index} for feature flag {flag.key}"
            )
            raise InconclusiveMatchError("Flag has unknown group type index")

        if group_name not in groups:
            # Group flags are never enabled if `groups` aren't passed in,
            # asking the server would give the same answer
            if warn_on_unknown_groups:
                log.warning(
                    f"[FEATURE FLAGS] Can't compute group feature flag: {flag.key} without group names passed in"
                )
            else:
                log.debug(
                    f"[FEATURE FLAGS] Can't compute group feature flag: {flag.key} without group names passed in"
                )
            return False

        focused_group_properties = group_properties.get(group_name) or {}
        return match_feature_flag_properties(
            flag,
            groups[group_name],
            focused_group_properties,
            definitions.cohorts,
            definitions.flags_by_key,
            evaluation_cache,
        )

    return match_feature_flag_properties(
        flag,
        distinct_id,
        person_properties,
        definitions.cohorts,
        definitions.flags_by_key,
        evaluation_cache,
    )


def sort_conditions(conditions):
    # sorted() is stable: conditions with a variant override move to the front,
    # everything else keeps its declared order
    return sorted(conditions, key=lambda condition: 0 if condition.variant else 1)


def match_feature_flag_properties(
    flag: FlagDefinition,
    distinct_id,
    properties,
    cohort_properties=None,
    flags_by_key=None,
    evaluation_cache=None,
) -> FlagValue:
    is_inconclusive = False
    cohort_properties = cohort_properties or {}
    valid_variant_keys = flag.variant_keys

    for condition in sort_conditions(flag.conditions):
        try:
            # if any one condition resolves to True, we can shortcircuit and return
            # the matching variant
            if is_condition_match(
                flag,
                distinct_id,
                condition,
                properties,
                cohort_properties,
                flags_by_key,
                evaluation_cache,
            ):
                variant_override = condition.variant
                if variant_override and variant_override in valid_variant_keys:
                    variant = variant_override
                else:
                    variant = get_matching_variant(flag, distinct_id)
                return variant or True
        except InconclusiveMatchError:
            is_inconclusive = True

    if is_inconclusive:
        raise InconclusiveMatchError(
            "Can't determine if feature flag is enabled or not with given properties"
        )

    # We can only return False when either all conditions are False, or
    # no condition was inconclusive.
    return False


def is_condition_match(
    flag: FlagDefinition,
    distinct_id,
    condition: FlagCondition,
    properties,
    cohort_properties,
    flags_by_key=None,
    evaluation_cache=None,
) -> bool:
    rollout_percentage = condition.rollout_percentage
    if len(condition.properties) > 0:
        for prop in condition.properties:
            if prop.is_cohort:
                matches = match_cohort(
                    prop,
                    properties,
                    cohort_properties,
                    flags_by_key,
                    evaluation_cache,
                    distinct_id,
                )
            elif prop.is_flag_dependency:
                matches = evaluate_flag_dependency(
                    prop,
                    flags_by_key,
                    evaluation_cache,
                    distinct_id,
                    properties,
                    cohort_properties,
                )
            else:
                matches = match_property(prop, properties)
            if not matches:
                return False

        if rollout_percentage is None:
            return True

    if rollout_percentage is not None and _hash(flag.key, distinct_id) > (
        rollout_percentage / 100
    ):
        return False

    return True


def evaluate_flag_dependency(
    property: PropertyFilter,
    flags_by_key,
    evaluation_cache,
    distinct_id,
    properties,
    cohort_properties,
) -> bool:
    """
    Evaluate a `type="flag"` property by walking its dependency chain.

    Every flag in `dependency_chain` is evaluated (or read from
    `evaluation_cache`) in order. A definitive False anywhere in the chain
    fails the property. The last flag's value is then compared against the
    property's expected value with `flag_evaluates_to` semantics.

    Returns:
        bool: True if all dependencies in the chain evaluate to True, False otherwise
    """
    if flags_by_key is None or evaluation_cache is None:
        raise InconclusiveMatchError(
            f"Cannot evaluate flag dependency on '{property.key}' without flags_by_key and evaluation_cache"
        )

    if property.dependency_chain is None:
        # Missing dependency_chain indicates malformed server data
        raise InconclusiveMatchError(
            f"Flag dependency property for '{property.key}' is missing required 'dependency_chain' field"
        )

    # an empty chain is how the server marks a circular dependency
    if len(property.dependency_chain) == 0:
        log.debug(f"Circular dependency detected for flag: {property.key}")
        raise InconclusiveMatchError(
            f"Circular dependency detected for flag '{property.key}'"
        )

    for dep_flag_key in property.dependency_chain:
        if dep_flag_key not in evaluation_cache:
            dep_flag = flags_by_key.get(dep_flag_key)
            if not dep_flag:
                evaluation_cache[dep_flag_key] = None
                raise InconclusiveMatchError(
                    f"Cannot evaluate flag dependency '{dep_flag_key}' - flag not found in local flags"
                )
            if not dep_flag.active:
                evaluation_cache[dep_flag_key] = False
            else:
                try:
                    evaluation_cache[dep_flag_key] = match_feature_flag_properties(
                        dep_flag,
                        distinct_id,
                        properties,
                        cohort_properties,
                        flags_by_key,
                        evaluation_cache,
                    )
                except InconclusiveMatchError as e:
                    evaluation_cache[dep_flag_key] = None
                    raise InconclusiveMatchError(
                        f"Cannot evaluate flag dependency '{dep_flag_key}': {e}"
                    ) from e

        cached_result = evaluation_cache[dep_flag_key]
        if cached_result is None:
            raise InconclusiveMatchError(
                f"Flag dependency '{dep_flag_key}' was previously inconclusive"
            )
        elif not cached_result:
            return False

    expected_value = property.value
    if property.key and expected_value is not None:
        actual_value = evaluation_cache.get(property.key)
        if actual_value is None:
            raise InconclusiveMatchError(
                f"Flag '{property.key}' was not evaluated despite being in dependency chain"
            )

        if property.operator == Operator.FLAG_EVALUATES_TO:
            return matches_dependency_value(expected_value, actual_value)
        raise InconclusiveMatchError(
            f"Flag dependency property for '{property.key}' has invalid operator '{property.raw_operator}'"
        )

    return True


def matches_dependency_value(expected_value, actual_value) -> bool:
    # Any variant satisfies an expectation of `True`; variant names are
    # compared case-sensitively.
    if isinstance(actual_value, str) and len(actual_value) > 0:
        if isinstance(expected_value, bool):
            return expected_value
        elif isinstance(expected_value, str):
            return actual_value == expected_value
        return False

    if isinstance(actual_value, bool) and isinstance(expected_value, bool):
        return actual_value == expected_value

    return False


def match_property(
    property: PropertyFilter, property_values: Mapping[str, Any]
) -> bool:
    # only looks for matches where key exists in override_property_values
    # doesn't support operator is_not_set
    key = property.key
    operator = property.operator
    value = property.value

    if key not in property_values:
        raise InconclusiveMatchError(
            "can't match properties without a given property value"
        )

    if operator == Operator.IS_NOT_SET:
        raise InconclusiveMatchError("can't match properties with operator is_not_set")

    if operator is None:
        raise InconclusiveMatchError(f"Unknown operator {property.raw_operator}")

    override_value = property_values[key]

    if (operator not in NONE_VALUES_ALLOWED_OPERATORS) and override_value is None:
        # the value was provided, so this is a definite non-match rather than inconclusive
        log.warning(
            f"[FEATURE FLAGS] Property {key} cannot have a value of None with the {operator.value} operator"
        )
        return False

    if operator in (Operator.EXACT, Operator.IS_NOT):

        def compute_exact_match(value, override_value):
            if isinstance(value, list):
                return utils.stringify(override_value).casefold() in [
                    utils.stringify(val).casefold() for val in value
                ]
            return utils.str_iequals(value, override_value)

        if operator == Operator.EXACT:
            return compute_exact_match(value, override_value)
        else:
            return not compute_exact_match(value, override_value)

    if operator == Operator.IS_SET:
        return key in property_values

    if operator == Operator.ICONTAINS:
        return utils.str_icontains(override_value, value)

    if operator == Operator.NOT_ICONTAINS:
        return not utils.str_icontains(override_value, value)

    if operator == Operator.REGEX:
        return (
            is_valid_regex(str(value))
            and re.compile(str(value)).search(str(override_value)) is not None
        )

    if operator == Operator.NOT_REGEX:
        return (
            is_valid_regex(str(value))
            and re.compile(str(value)).search(str(override_value)) is None
        )

    if operator in COMPARISON_OPERATORS:
        # :TRICKY: We adjust comparison based on the override value passed in,
        # to make sure we handle both numeric and string comparisons appropriately.
        def compare(lhs, rhs, operator):
            if operator == Operator.GT:
                return lhs > rhs
            elif operator == Operator.GTE:
                return lhs >= rhs
            elif operator == Operator.LT:
                return lhs < rhs
            elif operator == Operator.LTE:
                return lhs <= rhs
            else:
                raise ValueError(f"Invalid operator: {operator}")

        parsed_value = None
        try:
            parsed_value = float(value)  # type: ignore
        except Exception:
            pass

        if parsed_value is not None and override_value is not None:
            if isinstance(override_value, str):
                return compare(override_value, str(value), operator)
            else:
                return compare(override_value, parsed_value, operator)
        else:
            return compare(str(override_value), str(value), operator)

    if operator in DATE_OPERATORS:
        if isinstance(value, bool):
            raise InconclusiveMatchError(
                "Date operations cannot be performed on boolean values"
            )

        try:
            parsed_date = relative_date_parse_for_feature_flag_matching(str(value))

            if not parsed_date:
                parsed_date = parser.parse(str(value))
                parsed_date = convert_to_datetime_aware(parsed_date)
        except Exception as e:
            raise InconclusiveMatchError(
                "The date set on the flag is not a valid format"
            ) from e

        if not parsed_date:
            raise InconclusiveMatchError(
                "The date set on the flag is not a valid format"
            )

        if isinstance(override_value, datetime.datetime):
            override_date = convert_to_datetime_aware(override_value)
            if operator == Operator.IS_DATE_BEFORE:
                return override_date < parsed_date
            else:
                return override_date > parsed_date
        elif isinstance(override_value, datetime.date):
            if operator == Operator.IS_DATE_BEFORE:
                return override_value < parsed_date.date()
            else:
                return override_value > parsed_date.date()
        elif isinstance(override_value, str):
            try:
                override_date = parser.parse(override_value)
                override_date = convert_to_datetime_aware(override_date)
            except Exception:
                raise InconclusiveMatchError("The date provided is not a valid format")
            if operator == Operator.IS_DATE_BEFORE:
                return override_date < parsed_date
            else:
                return override_date > parsed_date
        else:
            raise InconclusiveMatchError(
                "The date provided must be a string or date object"
            )

    # if we get here, we don't know how to handle the operator
    raise InconclusiveMatchError(f"Unknown operator {property.raw_operator}")


def match_cohort(
    property: PropertyFilter,
    property_values,
    cohort_properties: Mapping[str, PropertyGroup],
    flags_by_key=None,
    evaluation_cache=None,
    distinct_id=None,
) -> bool:
    cohort_id = str(property.value)
    if cohort_id not in cohort_properties:
        raise InconclusiveMatchError(
            "can't match cohort without a given cohort property value"
        )

    return match_property_group(
        cohort_properties[cohort_id],
        property_values,
        cohort_properties,
        flags_by_key,
        evaluation_cache,
        distinct_id,
    )


def match_property_group(
    property_group: Optional[PropertyGroup],
    property_values,
    cohort_properties,
    flags_by_key=None,
    evaluation_cache=None,
    distinct_id=None,
) -> bool:
    if not property_group or property_group.is_empty:
        # empty groups are no-ops, always match
        return True

    property_group_type = property_group.type
    error_matching_locally = False

    if property_group.groups:
        for group in property_group.groups:
            try:
                matches = match_property_group(
                    group,
                    property_values,
                    cohort_properties,
                    flags_by_key,
                    evaluation_cache,
                    distinct_id,
                )
                if property_group_type == "AND":
                    if not matches:
                        return False
                else:
                    # OR group
                    if matches:
                        return True
            except InconclusiveMatchError as e:
                log.debug(f"Failed to compute property group {group} locally: {e}")
                error_matching_locally = True

        if error_matching_locally:
            raise InconclusiveMatchError(
                "Can't match cohort without a given cohort property value"
            )
        # if we get here, all matched in AND case, or none matched in OR case
        return property_group_type == "AND"

    for prop in property_group.filters:
        try:
            if prop.is_cohort:
                matches = match_cohort(
                    prop,
                    property_values,
                    cohort_properties,
                    flags_by_key,
                    evaluation_cache,
                    distinct_id,
                )
            elif prop.is_flag_dependency:
                matches = evaluate_flag_dependency(
                    prop,
                    flags_by_key,
                    evaluation_cache,
                    distinct_id,
                    property_values,
                    cohort_properties,
                )
            else:
                matches = match_property(prop, property_values)

            if property_group_type == "AND":
                # if negated property, do the inverse
                if not matches and not prop.negation:
                    return False
                if matches and prop.negation:
                    return False
            else:
                # OR group
                if matches and not prop.negation:
                    return True
                if not matches and prop.negation:
                    return True
        except InconclusiveMatchError as e:
            log.debug(f"Failed to compute property {prop} locally: {e}")
            error_matching_locally = True

    if error_matching_locally:
        raise InconclusiveMatchError(
            "can't match cohort without a given cohort property value"
        )

    # if we get here, all matched in AND case, or none matched in OR case
    return property_group_type == "AND"


def get_feature_flag_payload(flag: FlagDefinition, flag_value: FlagValue) -> Any:
    """Returns the decoded payload for `flag_value`, or None if there isn't one."""
    if flag_value is None or flag_value is False:
        return None

    # boolean flags store their payload under "true", variants under their key
    lookup_value = "true" if flag_value is True else str(flag_value)
    payload = flag.payloads.get(lookup_value)
    # empty stored payloads ("", 0, false) count as no payload
    if payload is None or (
        isinstance(payload, (bool, int, float, str)) and not payload
    ):
        return None
    return decode_payload(payload)


def decode_payload(payload):
    if not isinstance(payload, str):
        return payload
    try:
        return json.loads(payload)
    except ValueError:
        return payload


def relative_date_parse_for_feature_flag_matching(
    value: str,
) -> Optional[datetime.datetime]:
    regex = r"^-?(?P<number>[0-9]+)(?P<interval>[a-z])$"
    match = re.search(regex, value)
    parsed_dt = datetime.datetime.now(datetime.timezone.utc)
    if match:
        number = int(match.group("number"))

        if number >= 10_000:
            # Guard against overflow, disallow numbers greater than 10_000
            return None

        interval = match.group("interval")
        if interval == "h":
            parsed_dt = parsed_dt - relativedelta(hours=number)
        elif interval == "d":
            parsed_dt = parsed_dt - relativedelta(days=number)
        elif interval == "w":
            parsed_dt = parsed_dt - relativedelta(weeks=number)
        elif interval == "m":
            parsed_dt = parsed_dt - relativedelta(months=number)
        elif interval == "y":
            parsed_dt = parsed_dt - relativedelta(years=number)
        else:
            return None

        return parsed_dt
    else:
        return None
