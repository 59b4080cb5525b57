"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

# Providers that talk to a local server and need no credential.
_KEYLESS_PROVIDERS = {"ollama"}


@dataclass
class ModelConfig:
    name: str
    provider: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    temperature: float = 0.7
    base_url: str | None = None


@dataclass
class PromptsConfig:
    draft: str
    critique: str
    synthesis: str
    convergence: str
    refinement: str
    response: str = ""
    personas: dict[str, str] = field(default_factory=dict)


@dataclass
class ParticipantConfig:
    name: str
    model: str                 # key into AppConfig.models
    role: str = "specialist"
    system_prompt: str = ""
    weight: float = 1.0


@dataclass
class DefaultsConfig:
    max_rounds: int
    convergence_threshold: float
    round_timeout_sec: int
    output_dir: Path
    event_capacity: int = 256
    beadifier_model: str = ""
    fallback_order: list[str] = field(default_factory=list)
    panel: list[ParticipantConfig] = field(default_factory=list)


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs info for missing API keys but does not raise: callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    panel = [
        ParticipantConfig(
            name=str(p["name"]),
            model=str(p["model"]),
            role=str(p.get("role", "specialist")),
            system_prompt=str(p.get("system_prompt", "")),
            weight=float(p.get("weight", 1.0)),
        )
        for p in raw.get("panel", [])
    ]
    defaults = DefaultsConfig(
        max_rounds=int(defaults_raw["max_rounds"]),
        convergence_threshold=float(defaults_raw["convergence_threshold"]),
        round_timeout_sec=int(defaults_raw["round_timeout_sec"]),
        output_dir=Path(defaults_raw["output_dir"]),
        event_capacity=int(defaults_raw.get("event_capacity", 256)),
        beadifier_model=str(defaults_raw.get("beadifier_model", "")),
        fallback_order=list(defaults_raw.get("fallback_order", [])),
        panel=panel,
    )

    prompts_raw = raw["prompts"]
    personas_raw = raw.get("personas", {})
    prompts = PromptsConfig(
        draft=prompts_raw["draft"],
        critique=prompts_raw["critique"],
        synthesis=prompts_raw["synthesis"],
        convergence=prompts_raw["convergence"],
        refinement=prompts_raw["refinement"],
        response=prompts_raw.get("response", ""),
        personas={k: str(v) for k, v in personas_raw.items()},
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for model_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=model_name,
            provider=model_raw["provider"],
            model=model_raw["model"],
            api_key_env=model_raw.get("api_key_env", ""),
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            temperature=float(model_raw.get("temperature", 0.7)),
            base_url=model_raw.get("base_url"),
        )
        models[model_name] = model_cfg

        if model_cfg.provider in _KEYLESS_PROVIDERS:
            available_providers.add(model_name)
            logger.info("Provider available (local): %s", model_name)
            continue

        api_key = os.environ.get(model_cfg.api_key_env, "").strip() if model_cfg.api_key_env else ""
        if api_key:
            available_providers.add(model_name)
            logger.info("Provider available: %s", model_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                model_name,
                model_cfg.api_key_env,
            )

    unknown = [p.model for p in panel if p.model not in models]
    if unknown:
        logger.warning("Panel references unknown models: %s", ", ".join(unknown))

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        available_providers=available_providers,
    )
