"""
Data models for solved exemplars used as few-shot grounding.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Exemplar(BaseModel):
    """A previously solved (transcript, expected values) pair. Read-only."""
    model_config = ConfigDict(frozen=True)

    id: str
    transcript: str
    expected: dict[str, Any] = Field(default_factory=dict)


class ExemplarDocument(BaseModel):
    """One exemplar as stored in the vector index."""
    id: Optional[str] = None
    domain_id: str
    transcript: str
    result: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float]

    def to_source(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "templateId": self.domain_id,
            "transcript": self.transcript,
            "result": self.result,
            "embedding": self.embedding,
        }
