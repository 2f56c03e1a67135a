"""Job category table and run settings.

The category table is a YAML file validated with Pydantic models and then
frozen into plain dataclasses for the runtime. It maps every test target to
exactly one JobCategory, which carries the per-worker memory floor, whether
the target may be split across workers, and the docker limits to apply.

Run settings come from the environment in the same way the CI wrapper
scripts read them (CASSANDRA_DIR, CASSANDRA_DTEST_DIR, BUILD_DIR) plus
SPLIT_RUNNER_WORKERS, a deployment-time override for the worker count.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any
from xml.etree import ElementTree

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError, UnknownTargetError

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_CATEGORIES_PATH = Path(__file__).resolve().parent / "categories.yaml"

GIB = 1024**3

DEFAULT_TEST_SCRIPT = "run-tests.sh"
DEFAULT_DOCKERFILE = "ubuntu2004_test.docker"
DEFAULT_CONTAINER_PROJECT_DIR = "/home/cassandra/cassandra"
DEFAULT_CONTAINER_DTEST_DIR = "/home/cassandra/cassandra-dtest"
DEFAULT_BUILD_RETRY_DELAY_SEC = 10.0
DEFAULT_DIAGNOSTIC_LOG_TAIL = 200

WORKERS_ENV_VAR = "SPLIT_RUNNER_WORKERS"


# =============================================================================
# YAML schema
# =============================================================================


class _ConfigBase(BaseModel):
    """Base model with strict validation - no extra fields allowed."""

    model_config = ConfigDict(extra="forbid")


class CategoryModel(_ConfigBase):
    min_memory_gib: float = Field(..., gt=0)
    container_memory_gib: float = Field(..., gt=0)
    splittable: bool = False
    max_workers: int | None = Field(None, ge=1)
    cpu_capped: bool = True
    test_script: str = Field(DEFAULT_TEST_SCRIPT, min_length=1)
    requires_dtest_dir: bool = False
    targets: list[str] = Field(..., min_length=1)


class ArtifactModel(_ConfigBase):
    source: str = Field(..., min_length=1)
    dest: str = Field(".", min_length=1)


class CategoryFileModel(_ConfigBase):
    schema_version: int = Field(1, ge=1)
    categories: dict[str, CategoryModel] = Field(..., min_length=1)
    artifacts: list[ArtifactModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def _targets_unique(self) -> CategoryFileModel:
        seen: dict[str, str] = {}
        for name, category in self.categories.items():
            for target in category.targets:
                if target in seen:
                    raise ValueError(
                        f"target {target!r} listed in both {seen[target]!r} and {name!r}"
                    )
                seen[target] = name
        return self


# =============================================================================
# Runtime records
# =============================================================================


@dataclass(frozen=True)
class JobCategory:
    """Static resource profile shared by a group of test targets."""

    name: str
    min_memory_bytes: int
    container_memory_bytes: int
    splittable: bool
    max_workers: int | None = None
    cpu_capped: bool = True
    test_script: str = DEFAULT_TEST_SCRIPT
    requires_dtest_dir: bool = False

    @property
    def container_memory_flag(self) -> str:
        """Docker memory value, e.g. ``5g`` for whole gibibytes."""
        if self.container_memory_bytes % GIB == 0:
            return f"{self.container_memory_bytes // GIB}g"
        return str(self.container_memory_bytes)


@dataclass(frozen=True)
class ArtifactSpec:
    """One file or directory copied out of a successful worker."""

    source: str
    dest: str = "."

    def resolve_source(self, container_build_dir: str, container_dtest_dir: str) -> str:
        return self.source.format(
            container_build_dir=container_build_dir,
            container_dtest_dir=container_dtest_dir,
        )


@dataclass(frozen=True)
class CategoryTable:
    """Lookup from target name to JobCategory."""

    categories: dict[str, JobCategory]
    targets: dict[str, str]
    artifacts: tuple[ArtifactSpec, ...] = ()

    def for_target(self, target: str) -> JobCategory:
        """Return the category for ``target``.

        Raises:
            UnknownTargetError: If no category lists the target.
        """
        name = self.targets.get(target)
        if name is None:
            raise UnknownTargetError(target)
        return self.categories[name]

    def targets_for(self, category_name: str) -> list[str]:
        return sorted(t for t, c in self.targets.items() if c == category_name)


def _gib_to_bytes(value: float) -> int:
    return int(value * GIB)


def parse_category_table(payload: Any) -> CategoryTable:
    """Validate a decoded YAML payload and build a CategoryTable."""
    if not isinstance(payload, dict):
        raise ConfigError("category table must be a mapping")
    try:
        model = CategoryFileModel.model_validate(payload)
    except ValidationError as e:
        raise ConfigError(f"invalid category table: {e}") from e

    categories: dict[str, JobCategory] = {}
    targets: dict[str, str] = {}
    for name, entry in model.categories.items():
        categories[name] = JobCategory(
            name=name,
            min_memory_bytes=_gib_to_bytes(entry.min_memory_gib),
            container_memory_bytes=_gib_to_bytes(entry.container_memory_gib),
            splittable=entry.splittable,
            max_workers=entry.max_workers,
            cpu_capped=entry.cpu_capped,
            test_script=entry.test_script,
            requires_dtest_dir=entry.requires_dtest_dir,
        )
        for target in entry.targets:
            targets[target] = name

    artifacts = tuple(ArtifactSpec(source=a.source, dest=a.dest) for a in model.artifacts)
    return CategoryTable(categories=categories, targets=targets, artifacts=artifacts)


def load_category_table(path: Path | None = None) -> CategoryTable:
    """Load the category table from YAML.

    Args:
        path: Path to a categories YAML file. Defaults to the packaged table.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigError: If the file does not validate.
    """
    table_path = path or DEFAULT_CATEGORIES_PATH
    if not table_path.exists():
        raise FileNotFoundError(f"category table not found: {table_path}")
    try:
        payload = yaml.safe_load(table_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {table_path}: {e}") from e
    return parse_category_table(payload)


# =============================================================================
# Run settings
# =============================================================================


@dataclass(frozen=True)
class RunSettings:
    """Host paths and policy knobs for one orchestrator run."""

    project_dir: Path
    build_dir: Path
    dtest_dir: Path
    dockerfile: str = DEFAULT_DOCKERFILE
    container_project_dir: str = DEFAULT_CONTAINER_PROJECT_DIR
    container_dtest_dir: str = DEFAULT_CONTAINER_DTEST_DIR
    worker_count_override: int | None = None
    compress_logs: bool = True
    diagnostic_log_tail: int = DEFAULT_DIAGNOSTIC_LOG_TAIL
    build_retry_delay_sec: float = DEFAULT_BUILD_RETRY_DELAY_SEC
    extra_env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.worker_count_override is not None and self.worker_count_override < 1:
            raise ConfigError("worker count override must be >= 1")
        if self.diagnostic_log_tail < 0:
            raise ConfigError("diagnostic_log_tail must be >= 0")
        if self.build_retry_delay_sec < 0:
            raise ConfigError("build_retry_delay_sec must be >= 0")

    @property
    def container_build_dir(self) -> str:
        return f"{self.container_project_dir}/build"

    @property
    def logs_dir(self) -> Path:
        return self.build_dir / "test" / "logs"

    @property
    def output_dir(self) -> Path:
        return self.build_dir / "test" / "output"

    def ensure_directories(self) -> None:
        """Create the host-side artifact sinks."""
        for path in (self.build_dir / "tmp", self.logs_dir, self.output_dir):
            path.mkdir(parents=True, exist_ok=True)


def _parse_worker_override(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{WORKERS_ENV_VAR} must be an integer, got {raw!r}") from e
    if value < 1:
        raise ConfigError(f"{WORKERS_ENV_VAR} must be >= 1, got {value}")
    return value


def load_run_settings(
    env: Mapping[str, str] | None = None,
    *,
    project_dir: Path | None = None,
    worker_count_override: int | None = None,
    compress_logs: bool = True,
) -> RunSettings:
    """Build RunSettings from environment variables.

    An explicit ``worker_count_override`` wins over SPLIT_RUNNER_WORKERS.
    """
    env = os.environ if env is None else env

    if project_dir is None:
        project_dir = Path(env.get("CASSANDRA_DIR") or Path.cwd())
    project_dir = project_dir.resolve()

    dtest_dir = Path(env.get("CASSANDRA_DTEST_DIR") or project_dir.parent / "cassandra-dtest")
    build_dir = Path(env.get("BUILD_DIR") or project_dir / "build")

    if worker_count_override is None:
        worker_count_override = _parse_worker_override(env.get(WORKERS_ENV_VAR))

    return RunSettings(
        project_dir=project_dir,
        build_dir=build_dir,
        dtest_dir=dtest_dir,
        worker_count_override=worker_count_override,
        compress_logs=compress_logs,
    )


# =============================================================================
# Build properties
# =============================================================================


@dataclass(frozen=True)
class JavaVersions:
    """JDK versions declared by the project's build.xml."""

    default: str | None = None
    supported: tuple[str, ...] = ()

    def resolve(self, requested: str | None) -> str:
        """Return ``requested`` (or the default) after checking it is supported.

        Raises:
            ConfigError: If no version is given and there is no default, or
                the version is not in a non-empty supported list.
        """
        version = requested or self.default
        if not version:
            raise ConfigError("no JDK version given and build.xml declares no java.default")
        if self.supported and version not in self.supported:
            raise ConfigError(
                f"JDK version {version} is not in {','.join(self.supported)}"
            )
        return version


def read_java_versions(build_xml: Path) -> JavaVersions:
    """Read ``java.default`` and ``java.supported`` from an ant build file.

    A missing file yields an empty JavaVersions.
    """
    if not build_xml.is_file():
        return JavaVersions()
    try:
        root = ElementTree.parse(build_xml).getroot()
    except ElementTree.ParseError as e:
        raise ConfigError(f"failed to parse {build_xml}: {e}") from e

    properties = {
        prop.get("name"): prop.get("value", "")
        for prop in root.iter("property")
        if prop.get("name")
    }
    supported = tuple(
        v.strip() for v in properties.get("java.supported", "").split(",") if v.strip()
    )
    return JavaVersions(default=properties.get("java.default") or None, supported=supported)


__all__ = [
    "DEFAULT_CATEGORIES_PATH",
    "GIB",
    "WORKERS_ENV_VAR",
    "ArtifactSpec",
    "CategoryTable",
    "JavaVersions",
    "JobCategory",
    "RunSettings",
    "load_category_table",
    "load_run_settings",
    "parse_category_table",
    "read_java_versions",
]
