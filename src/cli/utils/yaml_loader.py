"""YAML loading and minimal schema validation for CLI."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

import yaml

from src.config.engine_config import ConfigurationError
from src.conclusion.models import ConclusionRule
from src.significance.models import Variant

METRIC_FIELDS = ("impressions", "clicks", "conversions", "revenue")


class YamlValidationError(ValueError):
    """YAML schema validation error."""


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def validate_experiment(data: Dict[str, Any]) -> None:
    """Validate experiment YAML data.

    形式:
        test_id: checkout-button
        variants:
          - id: control
            is_control: true
            traffic_allocation: 50
            metrics: {impressions: 10000, conversions: 500}
        rules: [...]   # 任意（追加ルール）
    """
    _require_fields(data, ["test_id", "variants"])

    if not isinstance(data["test_id"], str) or not data["test_id"]:
        raise YamlValidationError("test_id は文字列で指定してください")

    variants = data["variants"]
    if not isinstance(variants, list) or len(variants) < 2:
        raise YamlValidationError("variants は2件以上の配列で指定してください")

    seen = set()
    for item in variants:
        if not isinstance(item, dict):
            raise YamlValidationError("variants の要素はオブジェクトで指定してください")
        _require_fields(item, ["id", "traffic_allocation", "metrics"], prefix="variants")
        if item["id"] in seen:
            raise YamlValidationError(f"variants.id が重複しています: {item['id']}")
        seen.add(item["id"])

        metrics = item["metrics"]
        if not isinstance(metrics, dict):
            raise YamlValidationError("variants.metrics はオブジェクトで指定してください")
        _require_fields(metrics, ["impressions"], prefix="variants.metrics")
        for name in METRIC_FIELDS:
            value = metrics.get(name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise YamlValidationError(f"variants.metrics.{name} は数値で指定してください")

    controls = [v for v in variants if v.get("is_control")]
    if len(controls) != 1:
        raise YamlValidationError("is_control: true のバリアントを1件だけ指定してください")

    rules = data.get("rules")
    if rules is not None and not isinstance(rules, list):
        raise YamlValidationError("rules は配列で指定してください")


def load_experiment(path: str) -> Tuple[str, List[Variant], List[ConclusionRule]]:
    """Load experiment YAML and return (test_id, variants, custom rules)."""
    data = load_yaml(path)
    validate_experiment(data)
    try:
        variants = [Variant.from_dict(item) for item in data["variants"]]
    except ValueError as e:
        raise YamlValidationError(f"バリアントの値が不正です: {e}") from e
    return data["test_id"], variants, parse_rules(data.get("rules") or [])


def load_rules(path: str) -> List[ConclusionRule]:
    """Load a rules YAML file (`rules:` 配列) and return validated rules."""
    data = load_yaml(path)
    _require_fields(data, ["rules"])
    if not isinstance(data["rules"], list):
        raise YamlValidationError("rules は配列で指定してください")
    return parse_rules(data["rules"])


def parse_rules(items: List[Any]) -> List[ConclusionRule]:
    rules = []
    for item in items:
        if not isinstance(item, dict):
            raise YamlValidationError("rules の要素はオブジェクトで指定してください")
        try:
            rule = ConclusionRule.from_dict(item)
        except (ConfigurationError, ValueError) as e:
            raise YamlValidationError(f"ルール定義が不正です: {e}") from e
        rules.append(rule)
    return rules


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(label + f for f in missing)}")
