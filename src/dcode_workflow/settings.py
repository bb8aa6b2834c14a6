from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    manifest_path: str = ".vision/workflows.json"
    executors_path: str = ".vision/executors.json"
    state_store_root: str = "state_store"
    max_iterations: int = 1_000
    max_artifact_bytes: int = 200_000
    command_timeout_seconds: int = 600
    protected_sandbox_dir: str = ".vision"
    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    model_economy: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            manifest_path=os.getenv("WORKFLOW_MANIFEST_PATH", ".vision/workflows.json"),
            executors_path=os.getenv("WORKFLOW_EXECUTORS_PATH", ".vision/executors.json"),
            state_store_root=os.getenv("WORKFLOW_STATE_STORE_ROOT", "state_store"),
            max_iterations=_get_env_int("WORKFLOW_MAX_ITERATIONS", default=1_000, minimum=1),
            max_artifact_bytes=_get_env_int("WORKFLOW_MAX_ARTIFACT_BYTES", default=200_000, minimum=1_024),
            command_timeout_seconds=_get_env_int("WORKFLOW_COMMAND_TIMEOUT", default=600, minimum=1),
            protected_sandbox_dir=os.getenv("WORKFLOW_PROTECTED_SANDBOX_DIR", ".vision"),
            model_frontier=os.getenv("WORKFLOW_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("WORKFLOW_MODEL_EFFICIENT", "gpt-4o-mini"),
            model_economy=os.getenv("WORKFLOW_MODEL_ECONOMY", "gpt-4o-mini"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Model name validation --
        model_frontier = self.model_frontier.strip()
        if not model_frontier:
            raise ValueError("WORKFLOW_MODEL_FRONTIER must be non-empty")
        model_efficient = self.model_efficient.strip()
        if not model_efficient:
            raise ValueError("WORKFLOW_MODEL_EFFICIENT must be non-empty")
        model_economy = self.model_economy.strip()
        if not model_economy:
            raise ValueError("WORKFLOW_MODEL_ECONOMY must be non-empty")

        # -- Numeric bounds validation --
        if self.max_iterations > 100_000:
            raise ValueError(f"WORKFLOW_MAX_ITERATIONS must be <= 100000, got: {self.max_iterations}")

        # -- Path validation --
        if not self.manifest_path.strip():
            raise ValueError("WORKFLOW_MANIFEST_PATH must be non-empty")
        if not self.executors_path.strip():
            raise ValueError("WORKFLOW_EXECUTORS_PATH must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("WORKFLOW_STATE_STORE_ROOT must be non-empty")
        protected = self.protected_sandbox_dir.strip().strip("/")
        if not protected or Path(protected).is_absolute() or ".." in Path(protected).parts:
            raise ValueError(
                f"WORKFLOW_PROTECTED_SANDBOX_DIR must be a relative directory name, got: {self.protected_sandbox_dir!r}"
            )
        return RuntimeSettings(
            manifest_path=self.manifest_path.strip(),
            executors_path=self.executors_path.strip(),
            state_store_root=self.state_store_root.strip(),
            max_iterations=self.max_iterations,
            max_artifact_bytes=self.max_artifact_bytes,
            command_timeout_seconds=self.command_timeout_seconds,
            protected_sandbox_dir=protected,
            model_frontier=model_frontier,
            model_efficient=model_efficient,
            model_economy=model_economy,
        )

    @property
    def models_by_tier(self) -> dict[str, str]:
        return {
            "frontier": self.model_frontier,
            "efficient": self.model_efficient,
            "economy": self.model_economy,
        }

    def manifest_file(self, sandbox_root: Path) -> Path:
        path = Path(self.manifest_path)
        return path if path.is_absolute() else sandbox_root / path

    def executors_file(self, sandbox_root: Path) -> Path:
        path = Path(self.executors_path)
        return path if path.is_absolute() else sandbox_root / path

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
