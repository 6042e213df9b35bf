# flashgen/schemas.py
from typing import List, Optional, Literal
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

MIN_INPUT_LENGTH = 1000
MAX_INPUT_LENGTH = 10000


# --- Chat-completion response (validated by the gateway)
class ChatMessage(BaseModel):
    content: str
    role: Literal["assistant"]


class ChatChoice(BaseModel):
    message: ChatMessage
    index: int
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatCompletionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    choices: List[ChatChoice]
    model: str
    created: int
    usage: Optional[Usage] = None


# --- Flashcards
class CardDraft(BaseModel):
    front: str
    back: str


class GenerateFlashcardsCommand(BaseModel):
    input_text: str = Field(min_length=MIN_INPUT_LENGTH, max_length=MAX_INPUT_LENGTH)
    card_set_id: Optional[UUID] = None


class GenerateFlashcardsResponse(BaseModel):
    generation_id: str
    cards: List[CardDraft]
    created_at: datetime
    updated_at: datetime


class GenerationMetadata(BaseModel):
    duration: int
    generated_count: int


class GenerationDetails(BaseModel):
    generation_id: str
    input_text: str
    model: str
    metadata: GenerationMetadata
    accepted_edited_count: Optional[int] = None
    accepted_unedited_count: Optional[int] = None
    created_at: datetime
    updated_at: datetime
