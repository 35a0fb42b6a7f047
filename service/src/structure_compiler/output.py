import json
import logging
from pathlib import Path

from .data.base_definitions import BaseDefinitions
from .data.specifications import Specifications
from .errors import InitializationError
from .exporter import ExportResult, export
from .model.config import CompilerConfig
from .version_helper import VersionHelper

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"


def compile_project(project_dir: Path) -> tuple[CompilerConfig, ExportResult]:
    project_dir = Path(project_dir)
    config_file = project_dir / CONFIG_FILE
    if not config_file.exists():
        raise InitializationError(f"no {CONFIG_FILE} in {project_dir}")

    config = CompilerConfig.from_json(config_file)
    specs = Specifications.from_yaml(project_dir / config.model_file)
    base_definitions = BaseDefinitions.from_directory(project_dir / config.definitions_dir)
    return config, export(specs, base_definitions, config)


def _write(file: Path, data) -> None:
    content = json.dumps(data, indent=2, ensure_ascii=False)
    file.write_text(content, encoding="utf-8")


def write_results(result: ExportResult, output_dir: Path, fhir_version: str = "4.0.1") -> None:
    output_dir = Path(output_dir)
    version = VersionHelper(fhir_version)

    folders = {
        "profiles": result.profiles,
        "extensions": result.extensions,
        "models": result.models,
    }
    for folder, structures in folders.items():
        target = output_dir / folder
        target.mkdir(parents=True, exist_ok=True)
        for structure in structures:
            _write(target / f"{structure.id}.json", version.convert_structure(structure.to_json()))

    _write(output_dir / "diagnostics.json", [d.model_dump(mode="json") for d in result.diagnostics])
    logger.info("results written to %s", output_dir)


def output(project_dir: Path, strict: bool = False) -> int:
    """Compile a project directory and write its artifacts, returns the exit status."""
    try:
        config, result = compile_project(project_dir)
    except InitializationError as e:
        logger.error(e)
        return 2

    write_results(result, Path(project_dir) / config.output_dir, config.fhir_version)
    if strict and result.has_errors:
        logger.error("compilation finished with %d diagnostics", len(result.diagnostics))
        return 1
    return 0
