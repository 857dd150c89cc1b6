"""Configuration management for CodeScout.

Handles loading, saving, and validating configuration from TOML files.
Configuration lives inside the workspace cache directory at
<workspace>/.codescout/config.toml and is created with defaults on first use.

Example configuration:
    [index]
    file_extensions = ["py", "js", "ts"]
    exclude_patterns = ["**/node_modules/**", "**/.git/**"]
    chunking_mode = "smart"  # "smart" | "ast" | "line"
    chunk_size = 25

    [embedding]
    provider = "sentence_transformers"  # "sentence_transformers" | "ollama"
    model = "all-MiniLM-L6-v2"
    dimension = 384
    device = "auto"  # "auto" | "cpu" | "cuda" | "mps"

    [search]
    max_results = 5
    semantic_weight = 0.7
    exact_match_boost = 1.5

    [performance]
    worker_threads = "auto"
    max_cpu_percent = 50
    batch_delay_ms = 100
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

if TYPE_CHECKING:
    from codescout.knowledge.embeddings import EmbeddingConfig

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = ".codescout"
CONFIG_FILE_NAME = "config.toml"

DEFAULT_FILE_EXTENSIONS = [
    # JavaScript / TypeScript
    "js", "jsx", "mjs", "cjs", "ts", "tsx",
    # Python
    "py", "pyw",
    # JVM
    "java", "kt", "kts", "scala",
    # C family
    "c", "h", "cpp", "cc", "cxx", "hpp", "cs",
    # Systems and scripting
    "go", "rs", "rb", "php", "swift", "lua", "r", "pl", "sh", "bash", "zsh",
    # Styles and markup
    "css", "scss", "sass", "less", "html", "htm", "vue", "svelte", "xml",
    # Data and docs
    "json", "yaml", "yml", "toml", "md", "sql",
]  # fmt: skip

DEFAULT_EXCLUDE_PATTERNS = [
    "**/node_modules/**",
    "**/dist/**",
    "**/build/**",
    "**/.git/**",
    "**/coverage/**",
    "**/.next/**",
    "**/target/**",
    "**/vendor/**",
    "**/__pycache__/**",
    "**/.venv/**",
    f"**/{CACHE_DIR_NAME}/**",
]


class ChunkingMode(Enum):
    """Available chunking strategies."""

    SMART = "smart"
    AST = "ast"
    LINE = "line"


@dataclass
class IndexConfig:
    """Configuration for file discovery and chunking."""

    file_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_FILE_EXTENSIONS))
    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    max_file_size: int = 1_048_576  # bytes
    batch_size: int = 100
    chunking_mode: ChunkingMode = ChunkingMode.SMART
    chunk_size: int = 25  # lines
    chunk_overlap: int = 5  # lines
    watch_files: bool = False
    incremental_save_interval: int = 5  # batches
    enable_cache: bool = True


@dataclass
class EmbeddingSettings:
    """Configuration for the embedding model."""

    provider: str = "sentence_transformers"
    model: str = "all-MiniLM-L6-v2"
    dimension: int = 384
    device: str = "auto"
    ollama_host: str = "http://localhost:11434"


@dataclass
class SearchConfig:
    """Configuration for hybrid ranking."""

    max_results: int = 5
    semantic_weight: float = 0.7
    exact_match_boost: float = 1.5


@dataclass
class PerformanceConfig:
    """Configuration for resource usage during indexing."""

    worker_threads: int | str = "auto"
    max_cpu_percent: int = 50
    batch_delay_ms: int = 100
    max_workers: int | str = "auto"
    batch_timeout: float = 300.0  # seconds


@dataclass
class CodeScoutConfig:
    """Complete CodeScout configuration for one workspace."""

    workspace: Path = field(default_factory=Path.cwd)
    index: IndexConfig = field(default_factory=IndexConfig)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    search: SearchConfig = field(default_factory=SearchConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    verbose: bool = False

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace).expanduser().resolve()

    @property
    def cache_directory(self) -> Path:
        """Directory holding the store and the config file."""
        return self.workspace / CACHE_DIR_NAME

    @property
    def config_path(self) -> Path:
        return self.cache_directory / CONFIG_FILE_NAME

    def embedding_config(self) -> EmbeddingConfig:
        """Build the provider configuration for the embedding layer."""
        from codescout.knowledge.embeddings import EmbeddingConfig, EmbeddingProviderType

        try:
            provider_type = EmbeddingProviderType(self.embedding.provider)
        except ValueError:
            provider_type = EmbeddingProviderType.SENTENCE_TRANSFORMERS

        return EmbeddingConfig(
            provider_type=provider_type,
            model_name=self.embedding.model,
            dimension=self.embedding.dimension,
            device=None if self.embedding.device == "auto" else self.embedding.device,
            ollama_host=self.embedding.ollama_host,
        )

    @classmethod
    def default(cls, workspace: Path | str | None = None) -> CodeScoutConfig:
        """Create default configuration for a workspace."""
        return cls(workspace=Path(workspace) if workspace else Path.cwd())


def _parse_workers(value: Any) -> int | str:
    if isinstance(value, bool):
        return "auto"
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.strip().lower() == "auto":
            return "auto"
        try:
            return int(value)
        except ValueError:
            pass
    logger.warning("Invalid worker setting %r, using 'auto'", value)
    return "auto"


def _parse_index_config(data: dict[str, Any]) -> IndexConfig:
    """Parse index configuration from dict."""
    mode_str = data.get("chunking_mode", "smart")
    try:
        mode = ChunkingMode(mode_str)
    except ValueError:
        logger.warning("Unknown chunking mode %r, using 'smart'", mode_str)
        mode = ChunkingMode.SMART

    return IndexConfig(
        file_extensions=[
            ext.lstrip(".").lower()
            for ext in data.get("file_extensions", DEFAULT_FILE_EXTENSIONS)
        ],
        exclude_patterns=data.get("exclude_patterns", list(DEFAULT_EXCLUDE_PATTERNS)),
        max_file_size=data.get("max_file_size", 1_048_576),
        batch_size=data.get("batch_size", 100),
        chunking_mode=mode,
        chunk_size=data.get("chunk_size", 25),
        chunk_overlap=data.get("chunk_overlap", 5),
        watch_files=data.get("watch_files", False),
        incremental_save_interval=data.get("incremental_save_interval", 5),
        enable_cache=data.get("enable_cache", True),
    )


def _parse_embedding_settings(data: dict[str, Any]) -> EmbeddingSettings:
    """Parse embedding configuration from dict."""
    return EmbeddingSettings(
        provider=data.get("provider", "sentence_transformers"),
        model=data.get("model", "all-MiniLM-L6-v2"),
        dimension=data.get("dimension", 384),
        device=data.get("device", "auto"),
        ollama_host=data.get("ollama_host", "http://localhost:11434"),
    )


def _parse_search_config(data: dict[str, Any]) -> SearchConfig:
    """Parse search configuration from dict."""
    return SearchConfig(
        max_results=data.get("max_results", 5),
        semantic_weight=data.get("semantic_weight", 0.7),
        exact_match_boost=data.get("exact_match_boost", 1.5),
    )


def _parse_performance_config(data: dict[str, Any]) -> PerformanceConfig:
    """Parse performance configuration from dict."""
    return PerformanceConfig(
        worker_threads=_parse_workers(data.get("worker_threads", "auto")),
        max_cpu_percent=data.get("max_cpu_percent", 50),
        batch_delay_ms=data.get("batch_delay_ms", 100),
        max_workers=_parse_workers(data.get("max_workers", "auto")),
        batch_timeout=data.get("batch_timeout", 300.0),
    )


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(
    config: CodeScoutConfig, environ: dict[str, str] | None = None
) -> CodeScoutConfig:
    """Apply CODESCOUT_* environment variable overrides in place.

    Invalid numeric values are ignored with a warning.
    """
    env = os.environ if environ is None else environ

    def _number(name: str, cast: type, apply) -> None:
        raw = env.get(name)
        if raw is None or raw == "":
            return
        try:
            apply(cast(raw))
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", name, raw)

    if "CODESCOUT_VERBOSE" in env:
        config.verbose = _parse_bool(env["CODESCOUT_VERBOSE"])
    if "CODESCOUT_WATCH_FILES" in env:
        config.index.watch_files = _parse_bool(env["CODESCOUT_WATCH_FILES"])

    _number("CODESCOUT_BATCH_SIZE", int, lambda v: setattr(config.index, "batch_size", v))
    _number("CODESCOUT_MAX_FILE_SIZE", int, lambda v: setattr(config.index, "max_file_size", v))
    _number("CODESCOUT_CHUNK_SIZE", int, lambda v: setattr(config.index, "chunk_size", v))
    _number("CODESCOUT_MAX_RESULTS", int, lambda v: setattr(config.search, "max_results", v))
    _number(
        "CODESCOUT_SEMANTIC_WEIGHT",
        float,
        lambda v: setattr(config.search, "semantic_weight", v),
    )

    if env.get("CODESCOUT_EMBEDDING_MODEL"):
        config.embedding.model = env["CODESCOUT_EMBEDDING_MODEL"]
    if env.get("CODESCOUT_WORKER_THREADS"):
        config.performance.worker_threads = _parse_workers(env["CODESCOUT_WORKER_THREADS"])
    if env.get("CODESCOUT_CHUNKING_MODE"):
        try:
            config.index.chunking_mode = ChunkingMode(env["CODESCOUT_CHUNKING_MODE"].lower())
        except ValueError:
            logger.warning(
                "Ignoring invalid CODESCOUT_CHUNKING_MODE: %r", env["CODESCOUT_CHUNKING_MODE"]
            )

    return config


def validate_config(config: CodeScoutConfig) -> CodeScoutConfig:
    """Clamp out-of-range values in place, logging each correction."""
    search = config.search
    if not 0.0 <= search.semantic_weight <= 1.0:
        clamped = min(1.0, max(0.0, search.semantic_weight))
        logger.warning("semantic_weight %s out of range, using %s", search.semantic_weight, clamped)
        search.semantic_weight = clamped
    if search.exact_match_boost < 0:
        logger.warning("exact_match_boost %s is negative, using 0", search.exact_match_boost)
        search.exact_match_boost = 0.0
    if search.max_results < 1:
        logger.warning("max_results %s is below 1, using 1", search.max_results)
        search.max_results = 1

    index = config.index
    if index.chunk_size < 1:
        logger.warning("chunk_size %s is below 1, using 25", index.chunk_size)
        index.chunk_size = 25
    if not 0 <= index.chunk_overlap < index.chunk_size:
        overlap = max(0, min(index.chunk_overlap, index.chunk_size - 1))
        logger.warning("chunk_overlap %s invalid, using %s", index.chunk_overlap, overlap)
        index.chunk_overlap = overlap
    if index.batch_size < 1:
        logger.warning("batch_size %s is below 1, using 100", index.batch_size)
        index.batch_size = 100
    if index.incremental_save_interval < 1:
        index.incremental_save_interval = 1
    return config


def load_config(
    workspace: Path | str | None = None,
    config_path: Path | None = None,
    use_env: bool = True,
) -> CodeScoutConfig:
    """Load configuration for a workspace.

    Args:
        workspace: Workspace root. Defaults to the current directory.
        config_path: Explicit config file. Defaults to the workspace cache dir.
        use_env: Whether CODESCOUT_* environment overrides are applied.

    Returns:
        Loaded configuration. When the file does not exist, defaults are
        written to it first.
    """
    config = CodeScoutConfig.default(workspace)
    path = config_path or config.config_path

    if not path.exists():
        try:
            save_config(config, path)
            logger.info("Created default configuration at %s", path)
        except OSError as e:
            logger.warning("Could not write default configuration to %s: %s", path, e)
    else:
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (tomllib.TOMLDecodeError, OSError) as e:
            logger.warning("Failed to load config from %s: %s", path, e)
            data = {}

        config = CodeScoutConfig(
            workspace=config.workspace,
            index=_parse_index_config(data.get("index", {})),
            embedding=_parse_embedding_settings(data.get("embedding", {})),
            search=_parse_search_config(data.get("search", {})),
            performance=_parse_performance_config(data.get("performance", {})),
            verbose=data.get("verbose", False),
        )

    if use_env:
        apply_env_overrides(config)
    return validate_config(config)


def _format_toml_value(value: Any) -> str:
    """Format a Python value as TOML."""
    if isinstance(value, bool):
        return "true" if value else "false"
    elif isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, list):
        items = [_format_toml_value(item) for item in value]
        return "[" + ", ".join(items) + "]"
    elif isinstance(value, Enum):
        return f'"{value.value}"'
    else:
        return f'"{value}"'


def save_config(config: CodeScoutConfig, config_path: Path | None = None) -> None:
    """Save configuration to a TOML file.

    Args:
        config: Configuration to save
        config_path: Path to config file. Defaults to the workspace cache dir.
    """
    path = config_path or config.config_path
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        "# CodeScout configuration",
        "# Edit this file to customize indexing and search",
        "",
        f"verbose = {_format_toml_value(config.verbose)}",
        "",
        "[index]",
        f"file_extensions = {_format_toml_value(config.index.file_extensions)}",
        f"exclude_patterns = {_format_toml_value(config.index.exclude_patterns)}",
        f"max_file_size = {config.index.max_file_size}",
        f"batch_size = {config.index.batch_size}",
        f"chunking_mode = {_format_toml_value(config.index.chunking_mode)}",
        f"chunk_size = {config.index.chunk_size}",
        f"chunk_overlap = {config.index.chunk_overlap}",
        f"watch_files = {_format_toml_value(config.index.watch_files)}",
        f"incremental_save_interval = {config.index.incremental_save_interval}",
        f"enable_cache = {_format_toml_value(config.index.enable_cache)}",
        "",
        "[embedding]",
        f"provider = {_format_toml_value(config.embedding.provider)}",
        f"model = {_format_toml_value(config.embedding.model)}",
        f"dimension = {config.embedding.dimension}",
        f"device = {_format_toml_value(config.embedding.device)}",
        f"ollama_host = {_format_toml_value(config.embedding.ollama_host)}",
        "",
        "[search]",
        f"max_results = {config.search.max_results}",
        f"semantic_weight = {config.search.semantic_weight}",
        f"exact_match_boost = {config.search.exact_match_boost}",
        "",
        "[performance]",
        f"worker_threads = {_format_toml_value(config.performance.worker_threads)}",
        f"max_cpu_percent = {config.performance.max_cpu_percent}",
        f"batch_delay_ms = {config.performance.batch_delay_ms}",
        f"max_workers = {_format_toml_value(config.performance.max_workers)}",
        f"batch_timeout = {config.performance.batch_timeout}",
        "",
    ]

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))


def generate_default_config() -> str:
    """Generate default configuration as a commented TOML string."""
    extensions = _format_toml_value(DEFAULT_FILE_EXTENSIONS)
    excludes = _format_toml_value(DEFAULT_EXCLUDE_PATTERNS)
    return f"""# CodeScout configuration
# Saved at <workspace>/{CACHE_DIR_NAME}/{CONFIG_FILE_NAME}

verbose = false

[index]
# Extensions (without dot) that are indexed
file_extensions = {extensions}

# Directory names are extracted from "**/name/**" patterns and pruned
exclude_patterns = {excludes}

# Files larger than this many bytes are skipped
max_file_size = 1048576

# Files per indexing batch (raised automatically for large projects)
batch_size = 100

# "smart" (language-aware regex), "ast" (tree-sitter), or "line" (fixed windows)
chunking_mode = "smart"

# Lines per chunk for "line" mode and for splitting oversized AST nodes
chunk_size = 25
chunk_overlap = 5

# Re-index files as they change
watch_files = false

# Checkpoint the store every N batches
incremental_save_interval = 5

# Disable to keep nothing on disk
enable_cache = true

[embedding]
# "sentence_transformers" or "ollama"
provider = "sentence_transformers"
model = "all-MiniLM-L6-v2"
dimension = 384

# "auto", "cpu", "cuda", or "mps"
device = "auto"
ollama_host = "http://localhost:11434"

[search]
max_results = 5

# score = semantic_weight * cosine + (1 - semantic_weight) * term_overlap
#         + exact_match_boost (when the whole query appears in the chunk)
semantic_weight = 0.7
exact_match_boost = 1.5

[performance]
# Embedding worker processes: "auto" or a number
worker_threads = "auto"

# Share of CPU cores the worker pool may use
max_cpu_percent = 50

# Pause between indexing batches, in milliseconds
batch_delay_ms = 100

# Upper bound on worker processes: "auto" or a number
max_workers = "auto"

# Seconds before a worker batch is abandoned
batch_timeout = 300.0
"""
