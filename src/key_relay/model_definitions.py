import json
import logging
from typing import Any, Dict, List, Optional

from .types import CapabilityTier

lib_logger = logging.getLogger("key_relay")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

DEFAULT_MODELS: Dict[str, Dict[str, Any]] = {
    "gpt-3.5-turbo": {"name": "GPT-3.5", "tier": "gpt-3"},
    "gpt-35-turbo": {"name": "GPT-3.5", "tier": "gpt-3"},
    "gpt-4": {"name": "GPT-4", "tier": "gpt-4"},
    "gpt-4-32k": {"name": "GPT-4-32K", "tier": "gpt-4"},
}


class ModelCatalog:
    """
    Model id -> display name and capability tier.

    Defaults can be replaced through a JSON object, e.g. from the RELAY_MODELS
    environment variable:
    {"gpt-4": {"name": "GPT-4", "tier": "gpt-4"}, "gpt-3.5-turbo": {"name": "GPT-3.5"}}
    Entries without a tier are treated as standard models.
    """

    def __init__(
        self,
        definitions: Optional[Dict[str, Dict[str, Any]]] = None,
        models_json: Optional[str] = None,
    ):
        self.definitions: Dict[str, Dict[str, Any]] = dict(definitions or DEFAULT_MODELS)
        if models_json:
            self._load_json(models_json)

    def _load_json(self, models_json: str):
        try:
            models = json.loads(models_json)
        except (json.JSONDecodeError, TypeError) as e:
            lib_logger.warning(f"Invalid JSON in model definitions: {e}. Keeping defaults.")
            return
        if not isinstance(models, dict):
            lib_logger.warning("Model definitions must be a JSON object. Keeping defaults.")
            return
        self.definitions = {
            model_id: (entry if isinstance(entry, dict) else {"name": str(entry)})
            for model_id, entry in models.items()
        }
        lib_logger.info(f"Loaded {len(self.definitions)} model definition(s).")

    def tier_for(self, model_id: str) -> CapabilityTier:
        definition = self.definitions.get(model_id) or {}
        return CapabilityTier.from_record_type(definition.get("tier", "gpt-3"))

    def name_for(self, model_id: str) -> Optional[str]:
        definition = self.definitions.get(model_id)
        if definition is None:
            return None
        return definition.get("name", model_id)

    def is_known(self, model_id: Optional[str]) -> bool:
        return model_id in self.definitions

    def known_models(self) -> List[str]:
        return list(self.definitions.keys())
