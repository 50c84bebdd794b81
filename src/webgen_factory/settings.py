from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALWAYS_RELEVANT_FILES: tuple[str, ...] = (
    "src/App.tsx",
    "src/main.tsx",
    "src/index.css",
    "tailwind.config.ts",
    "package.json",
    "index.html",
)

DEFAULT_PROTECTED_FILES: tuple[str, ...] = (
    "src/main.tsx",
    "postcss.config.js",
    "vite.config.ts",
    "tsconfig.json",
    "tsconfig.app.json",
    "tsconfig.node.json",
    "package.json",
    "index.html",
)


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    project_id: str = "PROJECT-001"
    user_id: str = "local"
    model_generation: str = "gpt-4o"
    model_repair: str = "gpt-4o-mini"
    model_planner: str = "gpt-4o"
    embedding_model: str = "text-embedding-3-small"
    max_workers: int = 4
    task_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_cap_seconds: float = 5.0
    repair_max_attempts: int = 5
    repair_deterministic_rounds: int = 1
    ai_fix_files_per_round: int = 3
    action_loop_max_iterations: int = 10
    context_top_k: int = 12
    context_literal_cap: int = 5
    chunk_max_chars: int = 1_600
    chunk_overlap: int = 160
    generation_timeout_seconds: int = 120
    compile_timeout_seconds: int = 180
    build_timeout_seconds: int = 600
    transfer_timeout_seconds: int = 60
    compile_command: str = "npx tsc --noEmit"
    build_command: str = "npm run build"
    build_output_dir: str = "dist"
    root_artifact: str = "dist/index.html"
    always_relevant_files: tuple[str, ...] = field(default=DEFAULT_ALWAYS_RELEVANT_FILES)
    protected_files: tuple[str, ...] = field(default=DEFAULT_PROTECTED_FILES)
    workspace_root: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("WEBGEN_STATE_STORE_ROOT", "state_store"),
            project_id=os.getenv("WEBGEN_PROJECT_ID", "PROJECT-001"),
            user_id=os.getenv("WEBGEN_USER_ID", "local"),
            model_generation=os.getenv("WEBGEN_MODEL_GENERATION", "gpt-4o"),
            model_repair=os.getenv("WEBGEN_MODEL_REPAIR", "gpt-4o-mini"),
            model_planner=os.getenv("WEBGEN_MODEL_PLANNER", "gpt-4o"),
            embedding_model=os.getenv("WEBGEN_EMBEDDING_MODEL", "text-embedding-3-small"),
            max_workers=_get_env_int("WEBGEN_MAX_WORKERS", default=4, minimum=1, maximum=32),
            task_max_attempts=_get_env_int("WEBGEN_TASK_MAX_ATTEMPTS", default=3, minimum=1, maximum=10),
            retry_backoff_seconds=_get_env_float("WEBGEN_RETRY_BACKOFF_SECONDS", default=1.0, minimum=0.0),
            retry_backoff_cap_seconds=_get_env_float("WEBGEN_RETRY_BACKOFF_CAP_SECONDS", default=5.0, minimum=0.0),
            repair_max_attempts=_get_env_int("WEBGEN_REPAIR_MAX_ATTEMPTS", default=5, minimum=1, maximum=20),
            repair_deterministic_rounds=_get_env_int(
                "WEBGEN_REPAIR_DETERMINISTIC_ROUNDS", default=1, minimum=1, maximum=20
            ),
            ai_fix_files_per_round=_get_env_int("WEBGEN_AI_FIX_FILES_PER_ROUND", default=3, minimum=1),
            action_loop_max_iterations=_get_env_int(
                "WEBGEN_ACTION_LOOP_MAX_ITERATIONS", default=10, minimum=1, maximum=100
            ),
            context_top_k=_get_env_int("WEBGEN_CONTEXT_TOP_K", default=12, minimum=1),
            context_literal_cap=_get_env_int("WEBGEN_CONTEXT_LITERAL_CAP", default=5, minimum=0),
            chunk_max_chars=_get_env_int("WEBGEN_CHUNK_MAX_CHARS", default=1_600, minimum=200),
            chunk_overlap=_get_env_int("WEBGEN_CHUNK_OVERLAP", default=160, minimum=0),
            generation_timeout_seconds=_get_env_int("WEBGEN_GENERATION_TIMEOUT", default=120, minimum=1),
            compile_timeout_seconds=_get_env_int("WEBGEN_COMPILE_TIMEOUT", default=180, minimum=1),
            build_timeout_seconds=_get_env_int("WEBGEN_BUILD_TIMEOUT", default=600, minimum=1),
            transfer_timeout_seconds=_get_env_int("WEBGEN_TRANSFER_TIMEOUT", default=60, minimum=1),
            compile_command=os.getenv("WEBGEN_COMPILE_COMMAND", "npx tsc --noEmit"),
            build_command=os.getenv("WEBGEN_BUILD_COMMAND", "npm run build"),
            build_output_dir=os.getenv("WEBGEN_BUILD_OUTPUT_DIR", "dist"),
            root_artifact=os.getenv("WEBGEN_ROOT_ARTIFACT", "dist/index.html"),
            always_relevant_files=_get_env_list("WEBGEN_ALWAYS_RELEVANT_FILES", DEFAULT_ALWAYS_RELEVANT_FILES),
            protected_files=_get_env_list("WEBGEN_PROTECTED_FILES", DEFAULT_PROTECTED_FILES),
            workspace_root=os.getenv("WEBGEN_WORKSPACE_ROOT", ""),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the sandbox workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Model name validation --
        models: dict[str, str] = {}
        for env_name, attr in (
            ("WEBGEN_MODEL_GENERATION", "model_generation"),
            ("WEBGEN_MODEL_REPAIR", "model_repair"),
            ("WEBGEN_MODEL_PLANNER", "model_planner"),
            ("WEBGEN_EMBEDDING_MODEL", "embedding_model"),
        ):
            value = getattr(self, attr).strip()
            if not value:
                raise ValueError(f"{env_name} must be non-empty")
            models[attr] = value

        # -- Numeric bounds validation --
        if self.chunk_overlap >= self.chunk_max_chars:
            raise ValueError(
                f"WEBGEN_CHUNK_OVERLAP must be < WEBGEN_CHUNK_MAX_CHARS, got: {self.chunk_overlap}"
            )
        backoff_cap = max(self.retry_backoff_cap_seconds, self.retry_backoff_seconds)

        # -- String field validation --
        if not self.project_id.strip():
            raise ValueError("WEBGEN_PROJECT_ID must be non-empty")
        if not self.user_id.strip():
            raise ValueError("WEBGEN_USER_ID must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("WEBGEN_STATE_STORE_ROOT must be non-empty")
        if not self.compile_command.strip():
            raise ValueError("WEBGEN_COMPILE_COMMAND must be non-empty")
        if not self.build_command.strip():
            raise ValueError("WEBGEN_BUILD_COMMAND must be non-empty")
        root_artifact = self.root_artifact.strip().lstrip("/")
        if not root_artifact:
            raise ValueError("WEBGEN_ROOT_ARTIFACT must be non-empty")
        output_dir = self.build_output_dir.strip().strip("/")
        if not output_dir:
            raise ValueError("WEBGEN_BUILD_OUTPUT_DIR must be non-empty")
        if not root_artifact.startswith(f"{output_dir}/"):
            raise ValueError("WEBGEN_ROOT_ARTIFACT must live inside WEBGEN_BUILD_OUTPUT_DIR")

        return RuntimeSettings(
            state_store_root=self.state_store_root,
            project_id=self.project_id.strip(),
            user_id=self.user_id.strip(),
            model_generation=models["model_generation"],
            model_repair=models["model_repair"],
            model_planner=models["model_planner"],
            embedding_model=models["embedding_model"],
            max_workers=self.max_workers,
            task_max_attempts=self.task_max_attempts,
            retry_backoff_seconds=self.retry_backoff_seconds,
            retry_backoff_cap_seconds=backoff_cap,
            repair_max_attempts=self.repair_max_attempts,
            repair_deterministic_rounds=self.repair_deterministic_rounds,
            ai_fix_files_per_round=self.ai_fix_files_per_round,
            action_loop_max_iterations=self.action_loop_max_iterations,
            context_top_k=self.context_top_k,
            context_literal_cap=self.context_literal_cap,
            chunk_max_chars=self.chunk_max_chars,
            chunk_overlap=self.chunk_overlap,
            generation_timeout_seconds=self.generation_timeout_seconds,
            compile_timeout_seconds=self.compile_timeout_seconds,
            build_timeout_seconds=self.build_timeout_seconds,
            transfer_timeout_seconds=self.transfer_timeout_seconds,
            compile_command=self.compile_command.strip(),
            build_command=self.build_command.strip(),
            build_output_dir=output_dir,
            root_artifact=root_artifact,
            always_relevant_files=tuple(self.always_relevant_files),
            protected_files=tuple(self.protected_files),
            workspace_root=self.workspace_root,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 3_600.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Parse a comma-separated path list; an unset variable yields ``default``."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())
