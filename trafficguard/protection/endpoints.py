from __future__ import annotations
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple

__all__ = ["EndpointConfig", "FieldRule", "compile_path_pattern", "validate_body", "endpoint_key"]

SCHEMA_TYPES = ("string", "number", "boolean", "array", "object")


def endpoint_key(method: str, path: str) -> str:
    return f"{method.upper()}:{path}"


def compile_path_pattern(path: str) -> Pattern[str]:
    """'/api/v1/*' -> prefix match; no '*' -> exact match."""
    parts = [re.escape(p) for p in path.split("*")]
    return re.compile(".*".join(parts))


@dataclass
class FieldRule:
    required: bool = False
    type: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | "FieldRule") -> "FieldRule":
        if isinstance(raw, FieldRule):
            return raw
        t = raw.get("type")
        return cls(
            required=bool(raw.get("required", False)),
            type=t if t in SCHEMA_TYPES else None,
            min_length=raw.get("min_length", raw.get("minLength")),
            max_length=raw.get("max_length", raw.get("maxLength")),
        )


@dataclass
class EndpointConfig:
    path: str
    method: str = "*"
    rate_limit: int = 100
    burst_size: int = 200
    requires_auth: bool = False
    required_scopes: List[str] = field(default_factory=list)
    schema: Optional[Dict[str, FieldRule]] = None
    enabled: bool = True
    hit_count: int = 0
    discovered_at: Optional[float] = None
    pattern: Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.method = (self.method or "*").upper()
        self.rate_limit = max(1, int(self.rate_limit))
        self.burst_size = max(self.rate_limit, int(self.burst_size))
        if self.schema is not None:
            self.schema = {name: FieldRule.parse(rule) for name, rule in self.schema.items()}
        # compiled once here; request-time lookups only run the regex
        self.pattern = compile_path_pattern(self.path)

    @property
    def key(self) -> str:
        return endpoint_key(self.method, self.path)

    def matches(self, method: str, path: str) -> bool:
        return (self.method == "*" or self.method == method.upper()) and bool(self.pattern.fullmatch(path))

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("pattern", None)
        d["key"] = self.key
        return d


def _json_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def validate_body(schema: Mapping[str, FieldRule], body: Optional[Mapping[str, Any]]) -> Tuple[bool, List[str]]:
    """Collect every violation instead of stopping at the first one."""
    body = body or {}
    errors: List[str] = []
    for name, rule in schema.items():
        value = body.get(name)
        if value is None:
            if rule.required:
                errors.append(f"{name} is required")
            continue
        if rule.type and _json_type(value) != rule.type:
            errors.append(f"{name} must be {rule.type}")
        if isinstance(value, str):
            if rule.min_length is not None and len(value) < rule.min_length:
                errors.append(f"{name} must be at least {rule.min_length} characters")
            if rule.max_length is not None and len(value) > rule.max_length:
                errors.append(f"{name} must be at most {rule.max_length} characters")
    return (not errors), errors
