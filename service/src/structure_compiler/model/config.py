import logging
from datetime import date
from pathlib import Path

from pydantic import BaseModel, ValidationError

from ..errors import InitializationError

logger = logging.getLogger(__name__)


class ContactConfig(BaseModel):
    name: str | None = None
    telecom: list[dict] = []


class CompilerConfig(BaseModel):
    project_url: str = "http://example.com"
    fhir_url: str = "http://example.com/fhir"
    project_shorthand: str = "SHR"
    publisher: str | None = None
    contact: list[ContactConfig] = []
    publish_date: str = date.today().isoformat()
    fhir_version: str = "4.0.1"
    model_file: str = "model.yaml"
    definitions_dir: str = "definitions"
    output_dir: str = "out"

    @staticmethod
    def from_json(file: str | Path) -> "CompilerConfig":
        file = Path(file)

        try:
            content = file.read_text(encoding="utf-8")
            config = CompilerConfig.model_validate_json(content)

        except ValidationError as e:
            msg = f"failed to load config from {str(file)}"
            logger.error(msg)
            logger.error(e.errors())
            raise InitializationError(msg)

        return config

    @property
    def contact_json(self) -> list[dict]:
        return [c.model_dump(exclude_none=True, exclude_defaults=True) for c in self.contact]
