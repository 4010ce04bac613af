"""
Envelope validation for messages crossing the UI ↔ host boundary.

Every inbound message is a tagged union discriminated by `type`:

    {"type": "issue.addLabel", "requestId": "req-...", "payload": {...}}

The payload is validated against ENVELOPE_SCHEMAS[type] (field-level schema
dicts, the same shape bot command params use) before anything reaches an
adapter. Unknown types and unknown fields are rejected.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import ValidationError
from .markdown import validate_issue_markdown
from .process import ISSUE_ID_PATTERN
from .schema import BoardColumn, DependencyType, IssueStatus

ISSUE_TYPES = ["task", "bug", "feature", "epic", "chore"]
MAX_TEXT = 10_000


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ParamValidator: field-level validation & coercion
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ParamValidator:
    """
    Validates and coerces a payload against a schema.

    Supports:
        - required / optional with defaults, nullable fields
        - types: string, integer, boolean, object (nested schema)
        - allowed-value lists and regex patterns
        - min_length / max_length for strings, min / max for integers
        - rejection of unknown fields
    """

    def validate(self, params: dict, schema: dict, prefix: str = "") -> dict:
        """
        Returns:
            dict of validated, coerced fields (absent optional fields stay absent).

        Raises:
            ValidationError with a user-facing message on the first failure.
        """
        if not isinstance(params, dict):
            raise ValidationError(f"{prefix.rstrip('.') or 'Payload'} must be an object")

        result = {}
        for name, spec in schema.items():
            label = prefix + name
            present = name in params
            value = params.get(name)
            default = spec.get("default")

            # ── Missing / null handling ──
            if value is None:
                if present and spec.get("nullable"):
                    result[name] = None
                    continue
                if spec.get("required"):
                    raise ValidationError(f"Missing required field: {label}")
                if default is not None:
                    result[name] = default
                continue

            result[name] = self._check(label, value, spec)

        unknown = set(params.keys()) - set(schema.keys())
        if unknown:
            raise ValidationError(
                f"Unknown fields: {', '.join(prefix + u for u in sorted(unknown))}"
            )
        return result

    def _check(self, label: str, value: Any, spec: dict) -> Any:
        field_type = spec.get("type", "string")

        # ── Type: string ──
        if field_type == "string":
            if not isinstance(value, (str, int, float)) or isinstance(value, bool):
                raise ValidationError(f"Field {label} must be a string")
            value = str(value)

            min_len = spec.get("min_length")
            max_len = spec.get("max_length")
            if min_len is not None and len(value.strip()) < min_len:
                raise ValidationError(f"Field {label} must be at least {min_len} characters")
            if max_len is not None and len(value) > max_len:
                raise ValidationError(f"Field {label} must be at most {max_len} characters")

            allowed = spec.get("allowed")
            if allowed and value not in allowed:
                raise ValidationError(
                    f"Invalid value for {label}: '{value}'. "
                    f"Allowed: {', '.join(str(a) for a in allowed)}"
                )

            pattern = spec.get("pattern")
            if pattern and not re.fullmatch(pattern, value):
                raise ValidationError(f"Invalid format for {label}: '{value}'")
            return value

        # ── Type: integer ──
        if field_type == "integer":
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValidationError(f"Field {label} must be an integer, got: '{value}'")
            try:
                value = int(value)
            except (ValueError, TypeError):
                raise ValidationError(f"Field {label} must be an integer, got: '{value}'")

            min_val = spec.get("min")
            max_val = spec.get("max")
            if min_val is not None and value < min_val:
                raise ValidationError(f"Field {label} must be >= {min_val}, got: {value}")
            if max_val is not None and value > max_val:
                raise ValidationError(f"Field {label} must be <= {max_val}, got: {value}")
            return value

        # ── Type: boolean ──
        if field_type == "boolean":
            if not isinstance(value, bool):
                raise ValidationError(f"Field {label} must be true or false")
            return value

        # ── Type: object ──
        if field_type == "object":
            if not isinstance(value, dict):
                raise ValidationError(f"Field {label} must be an object")
            nested = spec.get("schema")
            return self.validate(value, nested, prefix=f"{label}.") if nested else dict(value)

        raise ValidationError(f"Unknown field type in schema: {field_type}")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Envelope schemas
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

ISSUE_ID = {"type": "string", "required": True, "pattern": ISSUE_ID_PATTERN}
COLUMN = {"type": "string", "required": True, "allowed": [c.value for c in BoardColumn]}
LONG_TEXT = {"type": "string", "max_length": MAX_TEXT}

ISSUE_FIELDS = {
    "title": {"type": "string", "min_length": 1, "max_length": 500},
    "description": LONG_TEXT,
    "status": {"type": "string", "allowed": [s.value for s in IssueStatus]},
    "priority": {"type": "integer", "min": 0, "max": 4},
    "issue_type": {"type": "string", "allowed": ISSUE_TYPES},
    "assignee": {"type": "string", "max_length": 100, "nullable": True},
    "estimated_minutes": {"type": "integer", "min": 0, "nullable": True},
    "acceptance_criteria": LONG_TEXT,
    "design": LONG_TEXT,
    "notes": LONG_TEXT,
    "external_ref": {"type": "string", "max_length": 200, "nullable": True},
    "due_at": {"type": "string", "max_length": 64, "nullable": True},
    "defer_until": {"type": "string", "max_length": 64, "nullable": True},
}

CREATE_FIELDS = dict(ISSUE_FIELDS, title=dict(ISSUE_FIELDS["title"], required=True))

LABEL = {"type": "string", "required": True, "min_length": 1, "max_length": 100,
         "pattern": r"[^-\s].*"}

ENVELOPE_SCHEMAS: Dict[str, dict] = {
    "board.load": {},
    "board.refresh": {},
    "board.loadColumn": {
        "column": COLUMN,
        "offset": {"type": "integer", "default": 0, "min": 0},
        "limit": {"type": "integer", "default": 50, "min": 1, "max": 1000},
    },
    "board.loadMore": {"column": COLUMN},
    "issue.getFull": {"id": ISSUE_ID},
    "issue.create": CREATE_FIELDS,
    "issue.update": {
        "id": ISSUE_ID,
        "updates": {"type": "object", "required": True, "schema": ISSUE_FIELDS},
    },
    "issue.move": {"id": ISSUE_ID, "toColumn": COLUMN},
    "issue.delete": {"id": ISSUE_ID},
    "issue.addComment": {
        "id": ISSUE_ID,
        "text": {"type": "string", "required": True, "min_length": 1, "max_length": MAX_TEXT},
        "author": {"type": "string", "default": "User", "min_length": 1, "max_length": 100},
    },
    "issue.addLabel": {"id": ISSUE_ID, "label": LABEL},
    "issue.removeLabel": {"id": ISSUE_ID, "label": LABEL},
    "issue.addDependency": {
        "id": ISSUE_ID,
        "otherId": ISSUE_ID,
        "type": {"type": "string", "default": "blocks",
                 "allowed": [d.value for d in DependencyType]},
    },
    "issue.removeDependency": {"id": ISSUE_ID, "otherId": ISSUE_ID},
}

READ_TYPES = {"board.load", "board.refresh", "board.loadColumn", "board.loadMore", "issue.getFull"}
MUTATION_TYPES = set(ENVELOPE_SCHEMAS) - READ_TYPES

RESPONSE_TYPES = {
    "board.data", "board.columnData", "issue.full",
    "mutation.ok", "mutation.error", "webview.cleanup",
}

_validator = ParamValidator()


@dataclass
class Envelope:
    type: str
    request_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_mutation(self) -> bool:
        return self.type in MUTATION_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "requestId": self.request_id, "payload": self.payload}


def make_response(msg_type: str, request_id: Optional[str], payload: Optional[dict] = None) -> dict:
    return {"type": msg_type, "requestId": request_id, "payload": payload or {}}


def validate_envelope(raw: Any) -> Envelope:
    """Parse and validate one inbound message. Raises ValidationError."""
    if not isinstance(raw, dict):
        raise ValidationError("Message must be an object")

    msg_type = raw.get("type")
    request_id = raw.get("requestId")
    if not isinstance(msg_type, str) or not msg_type:
        raise ValidationError("Missing required field: type")
    if not isinstance(request_id, str) or not request_id or len(request_id) > 200:
        raise ValidationError("Missing required field: requestId")
    if msg_type not in ENVELOPE_SCHEMAS:
        raise ValidationError(f"Unknown message type: {msg_type}")

    extra = set(raw.keys()) - {"type", "requestId", "payload"}
    if extra:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(extra))}")

    payload = raw.get("payload")
    payload = _validator.validate({} if payload is None else payload, ENVELOPE_SCHEMAS[msg_type])

    text_fields = payload.get("updates", payload)
    failures = validate_issue_markdown(text_fields)
    if failures:
        name, check = next(iter(failures.items()))
        raise ValidationError(f"Invalid content in {name}: {check.errors[0]}")

    return Envelope(type=msg_type, request_id=request_id, payload=payload)
