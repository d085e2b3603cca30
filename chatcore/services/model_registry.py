"""Model registry: immutable reference data for the models the gateway can call."""

from collections.abc import Iterable

from chatcore.errors import NotFoundError
from chatcore.models.llm import ModelCapabilities, ModelDescriptor, Provider

DEFAULT_MODEL_ID = "claude-3-5-sonnet-20241022"

BUILTIN_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        provider=Provider.OPENAI,
        model_id="gpt-4o",
        name="GPT-4o",
        capabilities=ModelCapabilities(max_tokens=128_000),
        max_output_tokens=16_384,
    ),
    ModelDescriptor(
        provider=Provider.OPENAI,
        model_id="gpt-4o-mini",
        name="GPT-4o Mini",
        capabilities=ModelCapabilities(max_tokens=128_000),
        max_output_tokens=16_384,
    ),
    ModelDescriptor(
        provider=Provider.OPENAI,
        model_id="gpt-4-turbo",
        name="GPT-4 Turbo",
        capabilities=ModelCapabilities(max_tokens=128_000),
        max_output_tokens=4096,
    ),
    ModelDescriptor(
        provider=Provider.OPENAI,
        model_id="gpt-3.5-turbo",
        name="GPT-3.5 Turbo",
        capabilities=ModelCapabilities(max_tokens=16_385),
        max_output_tokens=4096,
    ),
    ModelDescriptor(
        provider=Provider.ANTHROPIC,
        model_id="claude-3-5-sonnet-20241022",
        name="Claude 3.5 Sonnet",
        capabilities=ModelCapabilities(max_tokens=200_000),
        max_output_tokens=8192,
    ),
    ModelDescriptor(
        provider=Provider.ANTHROPIC,
        model_id="claude-3-5-haiku-20241022",
        name="Claude 3.5 Haiku",
        capabilities=ModelCapabilities(max_tokens=200_000),
        max_output_tokens=8192,
    ),
    ModelDescriptor(
        provider=Provider.ANTHROPIC,
        model_id="claude-3-opus-20240229",
        name="Claude 3 Opus",
        capabilities=ModelCapabilities(max_tokens=200_000),
        max_output_tokens=4096,
    ),
)


class ModelRegistry:
    """Lookup table of model descriptors, keyed by model id."""

    def __init__(self, models: Iterable[ModelDescriptor] = BUILTIN_MODELS, default_model_id: str = DEFAULT_MODEL_ID):
        self._models = {m.model_id: m for m in models}
        if default_model_id not in self._models:
            raise NotFoundError(f"Default model {default_model_id} is not registered")
        self.default_model_id = default_model_id

    def get(self, model_id: str | None = None) -> ModelDescriptor:
        """Get a descriptor by id, or the default model when ``model_id`` is None.

        Raises:
            NotFoundError: If the model id is unknown
        """
        model_id = model_id or self.default_model_id
        try:
            return self._models[model_id]
        except KeyError:
            raise NotFoundError(f"Unknown model: {model_id}") from None

    def list_models(self, provider: Provider | None = None) -> list[ModelDescriptor]:
        return [m for m in self._models.values() if provider is None or m.provider == provider]

    @property
    def default(self) -> ModelDescriptor:
        return self._models[self.default_model_id]
