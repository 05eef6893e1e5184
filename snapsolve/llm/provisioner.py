"""Model artifact provisioning for the hosted provider."""

from __future__ import annotations

from typing import Any, Dict, List

from snapsolve.errors import ModelUnavailable
from snapsolve.llm.engine import ModelReference
from snapsolve.utils.config_loader import ModelSettings, load_environment_variables, resolve_api_key

SUPPORTED_PROVIDERS = ("nvidia",)


class ModelProvisioner:
    """Resolves the model reference the inference engine loads.

    For a hosted model the "artifact" is a model id plus a usable API key,
    so validation means checking the provider and resolving the key.
    """

    def __init__(self, settings: ModelSettings) -> None:
        self.settings = settings

    def key_candidates(self) -> List[str]:
        return [self.settings.api_key_env, "NVIDIA_API_KEY", "nvidia_api_key"]

    def ensure_model_available(self) -> ModelReference:
        """Returns a validated model reference.

        Raises:
            ModelUnavailable: If the provider is unsupported or no API key
                can be resolved.
        """
        provider = self.settings.provider
        if provider not in SUPPORTED_PROVIDERS:
            raise ModelUnavailable(
                "Unsupported model provider: {}".format(provider),
                reason="unsupported_provider",
            )
        load_environment_variables()
        api_key = resolve_api_key(self.key_candidates())
        if not api_key:
            raise ModelUnavailable(
                "No API key found in any of: {}".format(", ".join(self.key_candidates())),
                reason="missing_api_key",
            )
        return ModelReference(provider=provider, model=self.settings.model, api_key=api_key)

    def describe(self) -> Dict[str, Any]:
        """Returns diagnostics about provider and key availability.

        Returns:
            A serializable dictionary with provider metadata; never the key.
        """
        return {
            "provider": self.settings.provider,
            "model": self.settings.model,
            "api_key_env": self.settings.api_key_env,
            "api_key_present": resolve_api_key(self.key_candidates()) is not None,
        }
