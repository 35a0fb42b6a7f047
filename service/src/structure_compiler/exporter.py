import logging
from dataclasses import dataclass, field

from .constraint_applier import ConstraintApplier
from .context import CompilerContext
from .data.base_definitions import BaseDefinitions
from .data.specifications import Specifications
from .extensions import ExtensionSynthesizer
from .logical import ModelBuilder
from .model.config import CompilerConfig
from .model.diagnostic import Diagnostic
from .model.mapping import ElementMapping
from .profiles import ProfileBuilder
from .tree.structure import StructureDefinition

logger = logging.getLogger(__name__)


@dataclass
class ExportResult:
    profiles: list[StructureDefinition] = field(default_factory=list)
    no_diff_profiles: list[StructureDefinition] = field(default_factory=list)
    extensions: list[StructureDefinition] = field(default_factory=list)
    models: list[StructureDefinition] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.diagnostics) > 0


def export(
    specs: Specifications,
    base_definitions: BaseDefinitions,
    config: CompilerConfig | None = None,
    context: CompilerContext | None = None,
) -> ExportResult:
    """Compile every data element into logical models, profiles and the extensions they need."""
    context = context or CompilerContext(config=config or CompilerConfig())
    # synthesized Basic mappings stay local to this run
    specs = specs.copy()

    models = ModelBuilder(context, specs, base_definitions)
    models.build_all()

    # entries without a mapping are profiled on Basic
    for entry in specs.entries:
        if specs.find_mapping(entry.identifier) is None:
            specs.add_mapping(ElementMapping(identifier=entry.identifier, target_item="Basic"))

    applier = ConstraintApplier(context, specs, base_definitions)
    extensions = ExtensionSynthesizer(context, specs, base_definitions, applier)
    profiles = ProfileBuilder(context, specs, base_definitions, applier, extensions)
    profiles.build_all()

    result = ExportResult(
        profiles=profiles.profiles,
        no_diff_profiles=profiles.no_diff_profiles,
        extensions=extensions.extensions,
        models=models.models,
        diagnostics=list(context.diagnostics),
    )
    logger.info(
        "exported %d profiles, %d extensions and %d logical models with %d diagnostics",
        len(result.profiles),
        len(result.extensions),
        len(result.models),
        len(result.diagnostics),
    )
    return result
