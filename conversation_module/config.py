"""Configuration objects for the conversation module."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class BackendConfig:
    """Remote completion backend connection details."""

    endpoint: str = "https://api.openai.com/v1/chat/completions"
    provider: str = "openai"
    api_key: Optional[str] = None
    request_timeout: int = 60
    default_model: str = "gpt-3.5-turbo"
    default_max_tokens: int = 1000
    default_temperature: float = 0.7


@dataclass
class ConversationConfig:
    """Runtime controls for conversation exchanges."""

    backend: BackendConfig = field(default_factory=BackendConfig)
    default_model: str = "gpt-3.5-turbo"
    default_temperature: float = 0.7
    default_max_tokens: int = 1000
    default_page_size: int = 50
    # When a streamed reply is cancelled, keep what arrived as a truncated turn
    # instead of dropping it.
    persist_partial_on_cancel: bool = False
    credential_placeholder: str = "placeholder-key"
