# data_engine.py
import math
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import pandas as pd
from config import Config
from exceptions import ExpressionError, InvalidParameterError
from custom_logging import logger
from models import ValidationError
import expression

ProgressCallback = Optional[Callable[[float], None]]

TYPE_NAMES = {
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "string": lambda v: isinstance(v, str),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, (list, tuple)),
    "null": lambda v: v is None,
}

AGGREGATE_SUFFIXES = {
    "sum": "sum",
    "average": "avg",
    "min": "min",
    "max": "max",
    "count": "count",
}

SPECIAL_CHARS = re.compile(r"[^a-zA-Z0-9\s]")


def type_name(value: Any) -> str:
    for name, check in TYPE_NAMES.items():
        if check(value):
            return name
    return type(value).__name__


def is_number(value: Any) -> bool:
    return TYPE_NAMES["number"](value)


def round_half_up(value: float, digits: int) -> float:
    """Round to digits places with halves going up: 2.5 -> 3, -2.5 -> -2"""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def group_key_part(value: Any) -> str:
    """Text of one group_by value; 1 and 1.0 give the same key"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _report(on_progress: ProgressCallback, index: int, total: int) -> None:
    if on_progress and index % Config.PROGRESS_INTERVAL == 0:
        on_progress(index / total * 100)


class DataProcessor:
    def validate_item(self, item: Mapping[str, Any], schema: Mapping[str, Mapping[str, Any]]) -> List[ValidationError]:
        errors = []
        for field_name, rules in schema.items():
            if field_name not in item:
                if rules.get("required"):
                    errors.append(ValidationError(
                        ValidationError.MISSING_FIELD,
                        field_name,
                        f"Required field '{field_name}' is missing",
                    ))
                continue

            value = item[field_name]
            expected = rules.get("type")
            if expected:
                if expected not in TYPE_NAMES:
                    raise InvalidParameterError(f"Unknown schema type '{expected}' for field '{field_name}'")
                if not TYPE_NAMES[expected](value):
                    actual = type_name(value)
                    errors.append(ValidationError(
                        ValidationError.TYPE_ERROR,
                        field_name,
                        f"Field '{field_name}' should be {expected}, got {actual}",
                        expected=expected,
                        actual=actual,
                    ))

            if is_number(value):
                minimum = rules.get("min")
                maximum = rules.get("max")
                if minimum is not None and value < minimum:
                    errors.append(ValidationError(
                        ValidationError.RANGE_ERROR,
                        field_name,
                        f"Field '{field_name}' should be >= {minimum}, got {value}",
                        expected={"min": minimum},
                        actual=value,
                    ))
                if maximum is not None and value > maximum:
                    errors.append(ValidationError(
                        ValidationError.RANGE_ERROR,
                        field_name,
                        f"Field '{field_name}' should be <= {maximum}, got {value}",
                        expected={"max": maximum},
                        actual=value,
                    ))
        return errors

    def validate(
        self,
        dataset: Sequence[Mapping[str, Any]],
        schema: Mapping[str, Mapping[str, Any]],
        on_progress: ProgressCallback = None,
    ) -> Dict[str, Any]:
        """Check every item against the schema, partitioning valid and invalid items.

        Item problems are collected; a bad item never stops the batch.
        """
        summary = {
            "total": len(dataset),
            "valid": 0,
            "invalid": 0,
            "missing_fields": {},
            "type_errors": {},
            "range_errors": {},
        }
        counters = {
            ValidationError.MISSING_FIELD: summary["missing_fields"],
            ValidationError.TYPE_ERROR: summary["type_errors"],
            ValidationError.RANGE_ERROR: summary["range_errors"],
        }
        valid, invalid, all_errors = [], [], []

        for i, item in enumerate(dataset):
            errors = self.validate_item(item, schema)
            if errors:
                invalid.append({"index": i, "item": item, "errors": [e.to_dict() for e in errors]})
                summary["invalid"] += 1
                for error in errors:
                    bucket = counters[error.kind]
                    bucket[error.field] = bucket.get(error.field, 0) + 1
                    all_errors.append({"index": i, **error.to_dict()})
            else:
                valid.append(item)
                summary["valid"] += 1
            _report(on_progress, i, len(dataset))

        logger.info("Dataset validated", total=summary["total"], invalid=summary["invalid"])
        return {"valid": valid, "invalid": invalid, "errors": all_errors, "summary": summary}

    def clean_item(self, item: Mapping[str, Any], rules: Mapping[str, Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        """Cleaned copy of item, or None when a rule asks for the item to be dropped"""
        cleaned = dict(item)
        for field_name, rule in rules.items():
            if field_name not in cleaned:
                continue
            value = cleaned[field_name]

            if value is None or (isinstance(value, float) and math.isnan(value)):
                if rule.get("remove_nulls"):
                    return None
                if "default_value" in rule:
                    cleaned[field_name] = rule["default_value"]
                continue

            if isinstance(value, str):
                if rule.get("trim"):
                    value = value.strip()
                if rule.get("lowercase"):
                    value = value.lower()
                if rule.get("remove_special_chars"):
                    value = SPECIAL_CHARS.sub("", value)
                cleaned[field_name] = value

            elif is_number(value):
                if rule.get("round") is not None:
                    value = round_half_up(value, int(rule["round"]))
                minimum = rule.get("min")
                maximum = rule.get("max")
                if minimum is not None and value < minimum:
                    if not rule.get("clamp"):
                        return None
                    value = minimum
                if maximum is not None and value > maximum:
                    if not rule.get("clamp"):
                        return None
                    value = maximum
                cleaned[field_name] = value

        return cleaned

    def clean(
        self,
        dataset: Sequence[Mapping[str, Any]],
        rules: Mapping[str, Mapping[str, Any]],
        on_progress: ProgressCallback = None,
    ) -> Dict[str, Any]:
        cleaned_items, removed, fixed = [], [], []
        for i, item in enumerate(dataset):
            cleaned = self.clean_item(item, rules)
            if cleaned is None:
                removed.append(item)
            else:
                if cleaned != dict(item):
                    fixed.append({"original": item, "cleaned": cleaned})
                cleaned_items.append(cleaned)
            _report(on_progress, i, len(dataset))

        summary = {
            "total": len(dataset),
            "cleaned": len(cleaned_items),
            "removed": len(removed),
            "fixed": len(fixed),
        }
        logger.info("Dataset cleaned", **summary)
        return {"cleaned": cleaned_items, "removed": removed, "fixed": fixed, "summary": summary}

    @staticmethod
    def format_value(value: Any, fmt: str, decimals: int = 2) -> Any:
        if not is_number(value):
            raise InvalidParameterError(f"Cannot format non-numeric value {value!r}")
        if fmt == "currency":
            return f"£{value:.2f}"
        if fmt == "percentage":
            return f"{value * 100:.1f}%"
        if fmt == "decimal":
            return f"{value:.{decimals}f}"
        raise InvalidParameterError(f"Unknown format: {fmt}")

    def apply_transformations(
        self,
        item: Mapping[str, Any],
        transformations: Sequence[Mapping[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """Run the pipeline on one item; None means a filter step dropped it"""
        result = dict(item)
        for step in transformations:
            kind = step.get("type")
            if kind == "rename_field":
                if step["old_name"] in result:
                    result[step["new_name"]] = result.pop(step["old_name"])
            elif kind == "calculate_field":
                try:
                    result[step["field_name"]] = expression.evaluate(step["expression"], result)
                except ExpressionError as e:
                    logger.warning("Failed to calculate field", field=step["field_name"], error=str(e))
            elif kind == "format_field":
                field_name = step["field"]
                if field_name in result:
                    try:
                        result[field_name] = self.format_value(
                            result[field_name], step.get("format"), int(step.get("decimals", 2))
                        )
                    except InvalidParameterError as e:
                        logger.warning("Failed to format field", field=field_name, error=str(e))
            elif kind == "filter_field":
                field_name = step["field"]
                if field_name in result:
                    condition = step.get("condition")
                    matches = result[field_name] == step.get("value")
                    if condition == "equals" and not matches:
                        return None
                    if condition == "not_equals" and matches:
                        return None
                    if condition not in ("equals", "not_equals"):
                        raise InvalidParameterError(f"Unknown filter condition: {condition}")
            else:
                raise InvalidParameterError(f"Unknown transformation type: {kind}")
        return result

    def transform(
        self,
        dataset: Sequence[Mapping[str, Any]],
        transformations: Sequence[Mapping[str, Any]],
        on_progress: ProgressCallback = None,
    ) -> Dict[str, Any]:
        items = []
        filtered = 0
        for i, item in enumerate(dataset):
            transformed = self.apply_transformations(item, transformations)
            if transformed is None:
                filtered += 1
            else:
                items.append(transformed)
            _report(on_progress, i, len(dataset))
        return {
            "items": items,
            "summary": {"total": len(dataset), "transformed": len(items), "filtered": filtered},
        }

    def aggregate(
        self,
        dataset: Sequence[Mapping[str, Any]],
        group_by: Sequence[str],
        calculations: Sequence[Mapping[str, str]],
    ) -> List[Dict[str, Any]]:
        """One summary record per group, groups in order of first appearance.

        The group key joins the group_by values with '|'. Each calculation
        only sees the numeric values of its field; a group without any numeric
        value for a field gets no entry for that calculation.
        """
        for calc in calculations:
            if calc.get("operation") not in AGGREGATE_SUFFIXES:
                raise InvalidParameterError(f"Unknown aggregation operation: {calc.get('operation')}")
        if not dataset:
            return []

        keys = ["|".join(group_key_part(item.get(f)) for f in group_by) for item in dataset]
        fields = sorted({calc["field"] for calc in calculations})
        frame = pd.DataFrame({
            field_name: pd.Series(
                [item.get(field_name) if is_number(item.get(field_name)) else None for item in dataset],
                dtype="float64",
            )
            for field_name in fields
        })
        frame["_group"] = keys
        frame["_row"] = range(len(dataset))
        grouped = frame.groupby("_group", sort=False)
        first_rows = grouped["_row"].first()
        sizes = grouped.size()

        results = []
        for key, first_row in first_rows.items():
            first_item = dataset[int(first_row)]
            record = {
                "key": key,
                "group": {f: first_item.get(f) for f in group_by},
                "count": int(sizes[key]),
                "aggregations": {},
            }
            members = grouped.get_group(key)
            for calc in calculations:
                field_name = calc["field"]
                values = members[field_name].dropna()
                if values.empty:
                    continue
                operation = calc["operation"]
                name = f"{field_name}_{AGGREGATE_SUFFIXES[operation]}"
                if operation == "sum":
                    record["aggregations"][name] = float(values.sum())
                elif operation == "average":
                    record["aggregations"][name] = float(values.mean())
                elif operation == "min":
                    record["aggregations"][name] = float(values.min())
                elif operation == "max":
                    record["aggregations"][name] = float(values.max())
                else:
                    record["aggregations"][name] = int(values.count())
            results.append(record)

        logger.info("Dataset aggregated", num_items=len(dataset), num_groups=len(results))
        return results
