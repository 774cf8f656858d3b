import json
import math
from typing import Dict, List

from utils.grading_errors import ValidationError

MAX_CATEGORIES = 10
MAX_NAME_LENGTH = 50
MAX_DROP_LOWEST = 10
WEIGHT_TOTAL = 100.0
WEIGHT_TOLERANCE = 0.01


def _pick(item: Dict, snake: str, camel: str):
    """Read a field sent either as snake_case or camelCase."""
    if snake in item:
        return item.get(snake)
    return item.get(camel)


def _to_number(value):
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError("not finite")
    return number


def normalize_categories(categories) -> List[Dict]:
    """Validate a submitted category table and return it in canonical form.

    Accepts a list of dicts (or the same list as a JSON string). Every problem
    found is collected; if there are any, ValidationError carries the full list
    and nothing should be persisted.

    Output rows: {name, weight, drop_lowest, late_penalty_per_day,
    max_late_penalty, allow_extra_credit, sort_order}
    """
    if isinstance(categories, str):
        try:
            categories = json.loads(categories)
        except ValueError:
            raise ValidationError("categories must be valid JSON")
    if not isinstance(categories, list):
        raise ValidationError("categories must be an array")
    if len(categories) > MAX_CATEGORIES:
        raise ValidationError(
            f"at most {MAX_CATEGORIES} categories are allowed (got {len(categories)})"
        )

    errors = []
    rows: List[Dict] = []
    seen_names = {}

    for i, item in enumerate(categories):
        if not isinstance(item, dict):
            errors.append(f"categories[{i}] must be an object")
            continue

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append(f"categories[{i}].name must be a non-empty string")
            name = None
        else:
            name = name.strip()
            if len(name) > MAX_NAME_LENGTH:
                errors.append(
                    f"categories[{i}].name must not exceed {MAX_NAME_LENGTH} characters"
                )
            key = name.casefold()
            if key in seen_names:
                errors.append(
                    f"categories[{i}].name '{name}' duplicates categories[{seen_names[key]}]"
                )
            else:
                seen_names[key] = i

        weight = None
        try:
            weight = _to_number(item.get("weight"))
            if weight < 0 or weight > 100:
                errors.append(
                    f"categories[{i}].weight must be between 0 and 100 (got {weight})"
                )
        except (TypeError, ValueError):
            errors.append(f"categories[{i}].weight must be a number")

        drop_lowest = _pick(item, "drop_lowest", "dropLowest")
        if drop_lowest is None:
            drop_lowest = 0
        if (
            isinstance(drop_lowest, bool)
            or not isinstance(drop_lowest, int)
            or drop_lowest < 0
            or drop_lowest > MAX_DROP_LOWEST
        ):
            errors.append(
                f"categories[{i}].drop_lowest must be an integer between 0 and {MAX_DROP_LOWEST}"
            )

        penalties = {}
        for snake, camel in (
            ("late_penalty_per_day", "latePenaltyPerDay"),
            ("max_late_penalty", "maxLatePenalty"),
        ):
            value = _pick(item, snake, camel)
            if value is None:
                penalties[snake] = None
                continue
            try:
                value = _to_number(value)
            except (TypeError, ValueError):
                errors.append(f"categories[{i}].{snake} must be a number")
                continue
            if value < 0 or value > 100:
                errors.append(
                    f"categories[{i}].{snake} must be between 0 and 100 (got {value})"
                )
            penalties[snake] = value

        allow_extra_credit = _pick(item, "allow_extra_credit", "allowExtraCredit")
        if allow_extra_credit is None:
            allow_extra_credit = False
        if not isinstance(allow_extra_credit, bool):
            errors.append(f"categories[{i}].allow_extra_credit must be a boolean")

        rows.append(
            {
                "name": name,
                "weight": weight,
                "drop_lowest": drop_lowest,
                "late_penalty_per_day": penalties.get("late_penalty_per_day"),
                "max_late_penalty": penalties.get("max_late_penalty"),
                "allow_extra_credit": allow_extra_credit,
                "sort_order": i,
            }
        )

    # Weights of a non-empty table must sum to ~100
    if (
        rows
        and len(rows) == len(categories)
        and all(r["weight"] is not None for r in rows)
    ):
        total = sum(r["weight"] for r in rows)
        if abs(total - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
            weights = ", ".join(f"{r['name']}={r['weight']:g}" for r in rows)
            errors.append(
                f"category weights must sum to 100 (got {total:g}: {weights})"
            )

    if errors:
        raise ValidationError(errors)
    return rows
