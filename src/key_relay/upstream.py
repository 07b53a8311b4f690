from typing import Any, Dict

from .config import RelaySettings
from .types import ChatRequest


class UpstreamEndpoint:
    """
    Builds URLs, headers and payloads for the upstream completion API.

    Two deployment modes are supported: "openai" (bearer token, model in the
    body, optional organization header) and "azure" (an `api-key` header and a
    deployment-scoped URL; the deployment decides the model).
    """

    def __init__(self, settings: RelaySettings):
        self.settings = settings

    @property
    def is_azure(self) -> bool:
        return self.settings.api_type == "azure"

    def chat_url(self) -> str:
        if self.is_azure:
            return (
                f"{self.settings.api_host}/openai/deployments/{self.settings.azure_deployment_id}"
                f"/chat/completions?api-version={self.settings.api_version}"
            )
        return f"{self.settings.api_host}/v1/chat/completions"

    def models_url(self) -> str:
        if self.is_azure:
            return f"{self.settings.api_host}/openai/deployments?api-version={self.settings.api_version}"
        return f"{self.settings.api_host}/v1/models"

    def headers(self, key: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.is_azure:
            headers["api-key"] = key
        else:
            headers["Authorization"] = f"Bearer {key}"
            if self.settings.organization:
                headers["OpenAI-Organization"] = self.settings.organization
        return headers

    def chat_payload(self, request: ChatRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if not self.is_azure:
            payload["model"] = request.model
        payload["messages"] = [
            {"role": "system", "content": request.system_prompt},
            *request.messages,
        ]
        payload["max_tokens"] = request.max_tokens or self.settings.max_tokens
        payload["temperature"] = request.temperature
        payload["stream"] = True
        return payload

    def model_name(self, entry: Dict[str, Any]) -> str:
        """Returns the catalog id of an upstream model listing entry."""
        return entry.get("model") if self.is_azure else entry.get("id")
