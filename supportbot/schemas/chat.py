from typing import List, Optional

from pydantic import BaseModel


class ChatRequest(BaseModel):
    message: str


class TopMatch(BaseModel):
    score: float
    question: str


class MatchMeta(BaseModel):
    category: Optional[str] = None
    keywords: Optional[str] = None


class DirectMatch(BaseModel):
    score: float
    question: str
    meta: MatchMeta = MatchMeta()


class ChatResponse(BaseModel):
    mode: str  # "direct" or "rag"
    answer: str
    top3: List[TopMatch] = []
    match: Optional[DirectMatch] = None
