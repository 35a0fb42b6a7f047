import itertools
import logging
from dataclasses import dataclass, field
from typing import Iterator

from .model.config import CompilerConfig
from .model.diagnostic import Diagnostic, DiagnosticKind
from .model.identifier import Identifier
from .tree.structure import StructureDefinition

logger = logging.getLogger(__name__)


@dataclass
class CompilerContext:
    """State shared by all builders of one run."""

    config: CompilerConfig = field(default_factory=CompilerConfig)
    extensions: dict[Identifier, StructureDefinition] = field(default_factory=dict)
    slicing_ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def report(
        self, artifact_id: str, kind: DiagnosticKind, message: str, path: str | None = None
    ) -> Diagnostic:
        diagnostic = Diagnostic(artifact_id=artifact_id, kind=kind, message=message, path=path)
        if kind == DiagnosticKind.UNSUPPORTED_SHAPE:
            logger.warning("%s: %s", artifact_id, message)
        else:
            logger.error("%s: %s", artifact_id, message)
        self.diagnostics.append(diagnostic)
        return diagnostic

    def find_extension_by_url(self, url: str) -> StructureDefinition | None:
        for extension in self.extensions.values():
            if extension.url == url:
                return extension
        return None
