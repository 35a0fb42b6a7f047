from enum import StrEnum

from pydantic import BaseModel


class DiagnosticKind(StrEnum):
    INVALID_TARGET_PATH = "invalid_target_path"
    INVALID_SOURCE_PATH = "invalid_source_path"
    TYPE_MISMATCH = "type_mismatch"
    CARDINALITY_VIOLATION = "cardinality_violation"
    UNSUPPORTED_SHAPE = "unsupported_shape"
    VALUE_CONFLICT = "value_conflict"


class Diagnostic(BaseModel):
    artifact_id: str
    kind: DiagnosticKind
    message: str
    path: str | None = None
