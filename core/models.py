"""
Core data models for the Character Chat API

Defines the chat domain shared by the proxy and the conversation engine:
messages with regeneration variants, characters, personas, per-conversation
generation settings and the model catalog entries. Field aliases keep the
camelCase wire names used by browser clients.
"""

import time
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class WireModel(BaseModel):
    """Base model accepting both snake_case and camelCase field names"""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Message(WireModel):
    """
    One chat turn. When `variants` is non-empty, `content` mirrors
    `variants[current_variant]`.
    """

    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant", "system"]
    content: str = ""
    image: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    variants: Optional[List[str]] = None
    current_variant: Optional[int] = Field(default=None, alias="currentVariant")


class Character(WireModel):
    """Character persona card. Treated as read-only once a conversation starts."""

    id: str = ""
    name: str = ""
    description: str = ""
    avatar: str = ""
    tags: List[str] = Field(default_factory=list)
    personality: str = ""
    first_mes: str = ""
    scenario: str = ""
    depth_prompt: Optional[str] = None
    example_dialogue: Optional[str] = None
    creator: Optional[str] = None
    creator_notes: Optional[str] = None
    alternate_greetings: Optional[List[str]] = None
    character_version: Optional[str] = None
    mes_example: Optional[str] = None
    post_history_instructions: Optional[str] = None
    system_prompt: Optional[str] = None

    def greetings(self) -> List[str]:
        return [self.first_mes, *(self.alternate_greetings or [])]


class Persona(WireModel):
    """The user's side of the conversation"""

    name: str = ""
    traits: str = ""
    background: str = ""
    age: Optional[int] = None
    gender: Optional[str] = None
    appearance: Optional[str] = None
    avatar: Optional[str] = None

    def validation_errors(self) -> List[str]:
        errors = []
        if not self.name.strip():
            errors.append("Name is required")
        if self.age is None:
            errors.append("Age is required")
        elif self.age < 18:
            errors.append("Age must be 18 or older.")
        if not (self.gender or "").strip():
            errors.append("Gender is required")
        return errors

    def is_complete(self) -> bool:
        return not self.validation_errors()


SAMPLING_PARAMS = (
    "max_tokens",
    "temperature",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
)


class ConversationSettings(WireModel):
    """Generation parameters, transport selection and display options"""

    provider: Literal["pawan", "openai"] = "pawan"
    api_base_url: Optional[str] = Field(default="https://api.openai.com/v1", alias="apiBaseUrl")
    api_key: Optional[str] = Field(default="", alias="apiKey")
    pawan_api_key: Optional[str] = Field(default="", alias="pawanApiKey")
    model: str = "cosmosrp"
    temperature: float = 0.7
    top_p: float = 1
    top_k: int = 0
    min_p: float = 0.1
    frequency_penalty: float = 0
    presence_penalty: float = 0
    max_tokens: int = 1000
    repetition_penalty: float = 1
    italic_color: str = Field(default="#8b5cf6", alias="italicColor")
    streaming: bool = True

    def sampling_params(self) -> dict:
        """Parameters forwarded to chat-completions upstreams"""
        return {
            name: getattr(self, name)
            for name in SAMPLING_PARAMS
            if getattr(self, name) is not None
        }


DEFAULT_SETTINGS = ConversationSettings()


class Conversation(WireModel):
    id: str
    title: str
    character_id: str = Field(alias="characterId")
    messages: List[Message] = Field(default_factory=list)
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")


class ChatRequest(BaseModel):
    """Body of POST /api/chat"""

    messages: List[Message] = Field(default_factory=list)
    character: Optional[Character] = None
    persona: Optional[Persona] = None
    settings: Optional[ConversationSettings] = None


class ChatResponse(BaseModel):
    message: str


class ModelOption(BaseModel):
    """Catalog entry returned by GET /api/models"""

    id: str
    name: Optional[str] = None
    owner: Optional[str] = None
    description: Optional[str] = None
    order: Optional[int] = None


class RateLimitInfo(BaseModel):
    limit: int
    remaining: int
