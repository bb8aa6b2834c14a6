from __future__ import annotations

from dataclasses import dataclass

from .models import ExecutorConfig, ExecutorKind
from .settings import RuntimeSettings


VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})

DEFAULT_MODELS_BY_TIER: dict[str, str] = {
    "frontier": "gpt-4o",
    "efficient": "gpt-4o-mini",
    "economy": "gpt-4o-mini",
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps model tier names to concrete model identifiers for executor routing.

    Each model-backed executor config declares a ``model_tier`` (frontier,
    efficient, economy). ``resolve`` translates the tier to a model name at
    registry build time.
    """

    by_tier: dict[str, str]

    def __post_init__(self) -> None:
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        return cls(by_tier=dict(settings.models_by_tier))

    def resolve(self, executor_ref: str, model_tier: str) -> str:
        """Resolve a model tier to a concrete model name.

        Raises:
            ValueError: If model_tier is not a recognized tier.
        """
        if model_tier not in self.by_tier:
            available = ", ".join(sorted(self.by_tier))
            raise ValueError(
                f"Unknown model tier '{model_tier}' for executor {executor_ref}. "
                f"Valid tiers: {available}"
            )
        return self.by_tier[model_tier]


def resolve_executor_models(
    configs: list[ExecutorConfig],
    model_selection: RuntimeModelSelection,
) -> dict[str, str]:
    """Return executor ref -> model name for every model-backed executor config."""
    return {
        cfg.ref: model_selection.resolve(cfg.ref, cfg.model_tier)
        for cfg in sorted(configs, key=lambda item: item.ref)
        if cfg.kind in {ExecutorKind.CHAT, ExecutorKind.AGENT}
    }
