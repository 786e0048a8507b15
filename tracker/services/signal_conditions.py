"""
Signal condition language - write-time validation and a small, total evaluator.

A stage action may declare::

    {"logic": "ALL" | "ANY",
     "conditions": [
        {"signal": "BACKGROUND_CHECK", "operator": "=", "value": true, "onMissing": "BLOCK"},
        {"signal": "TECH_SCORE", "operator": ">=", "value": 3}
     ]}

Operators are a closed set. Conditions are validated when the action is
written (validate_signal_conditions) and evaluated as data, never executed.
The evaluator never raises: anything it cannot compare is "not met".

Missing-signal policy (onMissing, default BLOCK):
    BLOCK  → met=False, reason SIGNAL_MISSING
    ALLOW  → met=True,  reason MISSING_ALLOWED
    WARN   → met=True,  warning=True, reason MISSING_WITH_WARNING
An unrecognised policy behaves like BLOCK.
"""

import math
import re

from tracker.core.exceptions import ValidationError

# ── Vocabulary ───────────────────────────────────────────────────────────────

LOGIC_ALL = "ALL"
LOGIC_ANY = "ANY"
LOGICS = frozenset({LOGIC_ALL, LOGIC_ANY})

EQUALITY_OPERATORS = frozenset({"=", "!="})
OPERATORS = frozenset({"=", "!=", ">", ">=", "<", "<="})

ON_MISSING_BLOCK = "BLOCK"
ON_MISSING_ALLOW = "ALLOW"
ON_MISSING_WARN = "WARN"
ON_MISSING_POLICIES = frozenset({ON_MISSING_BLOCK, ON_MISSING_ALLOW, ON_MISSING_WARN})

REASON_MISSING = "SIGNAL_MISSING"
REASON_MISSING_ALLOWED = "MISSING_ALLOWED"
REASON_MISSING_WARNING = "MISSING_WITH_WARNING"

_WHITESPACE = re.compile(r"\s+")


def normalize_signal_key(raw) -> str:
    """Trim, uppercase and turn whitespace runs into underscores."""
    return _WHITESPACE.sub("_", str(raw or "").strip().upper())


# ── Write-time validation ────────────────────────────────────────────────────

def validate_signal_conditions(raw):
    """Validate and normalise a ``signal_conditions`` payload.

    Accepts ``onMissing`` or ``on_missing`` per condition. Returns the
    normalised dict, or None when ``raw`` is empty / has no conditions.

    Raises:
        ValidationError: unknown logic / operator / policy, missing signal
            key, or a non-scalar expected value.
    """
    if raw in (None, {}, []):
        return None
    if not isinstance(raw, dict):
        raise ValidationError("signal_conditions must be an object")

    logic = str(raw.get("logic") or LOGIC_ALL).strip().upper()
    if logic not in LOGICS:
        raise ValidationError(f"Invalid signal_conditions.logic '{logic}'. Must be ALL or ANY")

    conditions = raw.get("conditions") or []
    if not isinstance(conditions, list):
        raise ValidationError("signal_conditions.conditions must be a list")
    if not conditions:
        return None

    normalised = []
    for idx, cond in enumerate(conditions):
        if not isinstance(cond, dict):
            raise ValidationError(f"signal_conditions.conditions[{idx}] must be an object")

        signal = normalize_signal_key(cond.get("signal"))
        if not signal:
            raise ValidationError(f"signal_conditions.conditions[{idx}].signal is required")

        operator = str(cond.get("operator") or "").strip()
        if operator not in OPERATORS:
            raise ValidationError(
                f"Invalid operator '{operator}' in condition on {signal}",
                details={"allowed": sorted(OPERATORS)},
            )

        value = cond.get("value")
        if value is None or isinstance(value, (dict, list)):
            raise ValidationError(f"Condition on {signal} needs a scalar value")

        on_missing = str(
            cond.get("onMissing") or cond.get("on_missing") or ON_MISSING_BLOCK
        ).strip().upper()
        if on_missing not in ON_MISSING_POLICIES:
            raise ValidationError(
                f"Invalid onMissing '{on_missing}' in condition on {signal}. Must be BLOCK, ALLOW or WARN"
            )

        normalised.append({
            "signal": signal,
            "operator": operator,
            "value": value,
            "onMissing": on_missing,
        })

    return {"logic": logic, "conditions": normalised}


# ── Evaluation ───────────────────────────────────────────────────────────────

def _as_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare(signal_type: str, actual, operator: str, expected) -> bool:
    """Apply ``operator`` to a typed signal value. Unsupported combinations are False."""
    if actual is None:
        return False

    if signal_type == "boolean":
        if operator not in EQUALITY_OPERATORS:
            return False
        left, right = _as_bool(actual), _as_bool(expected)
        if left is None or right is None:
            return False
        return (left == right) if operator == "=" else (left != right)

    if signal_type in ("integer", "float"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        if operator == "=":
            return left == right
        if operator == "!=":
            return left != right
        if operator == ">":
            return left > right
        if operator == ">=":
            return left >= right
        if operator == "<":
            return left < right
        if operator == "<=":
            return left <= right
        return False

    if signal_type == "text":
        if operator not in EQUALITY_OPERATORS:
            return False
        return (str(actual) == str(expected)) if operator == "=" else (str(actual) != str(expected))

    return False


def evaluate_condition(condition: dict, signals: dict) -> dict:
    """Evaluate one condition against a signal snapshot.

    Args:
        condition: one normalised condition.
        signals: snapshot ``{KEY: {"value", "type", ...}}`` of current signals.

    Returns:
        {"signal", "operator", "expected", "actual", "onMissing", "met"}
        plus "warning" / "reason" where they apply.
    """
    key = normalize_signal_key(condition.get("signal"))
    operator = condition.get("operator")
    expected = condition.get("value")
    on_missing = str(condition.get("onMissing") or ON_MISSING_BLOCK).upper()

    result = {
        "signal": key,
        "operator": operator,
        "expected": expected,
        "actual": None,
        "onMissing": on_missing,
        "met": False,
    }

    current = signals.get(key)
    if current is None or current.get("value") is None:
        if on_missing == ON_MISSING_ALLOW:
            result.update(met=True, reason=REASON_MISSING_ALLOWED)
        elif on_missing == ON_MISSING_WARN:
            result.update(met=True, warning=True, reason=REASON_MISSING_WARNING)
        else:
            result["reason"] = REASON_MISSING
        return result

    result["actual"] = current["value"]
    result["met"] = compare(current.get("type"), current["value"], operator, expected)
    return result


def evaluate_signal_conditions(spec, signals: dict):
    """Evaluate an action's ``signal_conditions`` against a snapshot.

    Returns:
        (met, results) - ``met`` is True for an action without conditions;
        with ALL every result must be met, with ANY at least one.
    """
    if not spec or not spec.get("conditions"):
        return True, []

    results = [evaluate_condition(c, signals) for c in spec["conditions"]]
    logic = str(spec.get("logic") or LOGIC_ALL).upper()
    if logic == LOGIC_ANY:
        met = any(r["met"] for r in results)
    else:
        met = all(r["met"] for r in results)
    return met, results


def has_warnings(results) -> bool:
    return any(r.get("warning") for r in results)


def describe_failures(results) -> list[str]:
    """Human-readable lines for unmet conditions: ``KEY op expected (actual: X)``."""
    lines = []
    for r in results:
        if r["met"]:
            continue
        actual = "missing" if r["actual"] is None else r["actual"]
        lines.append(f"{r['signal']} {r['operator']} {r['expected']} (actual: {actual})")
    return lines


# ── Views ────────────────────────────────────────────────────────────────────

def _with_flags(view: dict, result: dict) -> dict:
    if result.get("warning"):
        view["warning"] = True
    if result.get("reason"):
        view["reason"] = result["reason"]
    return view


def menu_view(result: dict) -> dict:
    """Per-condition shape returned by the action menu."""
    return _with_flags({
        "signal": result["signal"],
        "operator": result["operator"],
        "value": result["expected"],
        "onMissing": result["onMissing"],
        "currentValue": result["actual"],
        "met": result["met"],
    }, result)


def log_view(result: dict) -> dict:
    """Per-condition shape stored in the execution log."""
    return _with_flags({
        "signal": result["signal"],
        "operator": result["operator"],
        "expected": result["expected"],
        "actual": result["actual"],
        "met": result["met"],
    }, result)
