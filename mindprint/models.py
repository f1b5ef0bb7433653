
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional

from .certificate import CertificateInput


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IngestBatchRequest(ApiModel):
    # Loosely typed on purpose: the protocol validates these with its own errors
    session_token: Any = Field(default=None, alias="sessionToken")
    batch_sequence: Any = Field(default=None, alias="batchSequence")
    events: Any = None


class FinishSessionRequest(ApiModel):
    text: str = ""


class ValidateSessionRequest(ApiModel):
    events: List[Any] = Field(default_factory=list)
    content_length: float = Field(default=0, alias="contentLength")


class CertificateRequest(ApiModel):
    title: str = ""
    subtitle: str = ""
    text: str = ""
    score: Optional[float] = 0
    issued_at: Optional[str] = Field(default=None, alias="issuedAt")
    seed: str = ""
    sparkline: List[Any] = Field(default_factory=list)
    replay: List[Any] = Field(default_factory=list)
    validation_status: Optional[str] = Field(default=None, alias="validationStatus")
    risk_score: Optional[float] = Field(default=None, alias="riskScore")
    confidence: Optional[float] = None

    def to_input(self) -> CertificateInput:
        return CertificateInput(
            text=self.text,
            title=self.title,
            subtitle=self.subtitle,
            score=self.score,
            issued_at=self.issued_at,
            seed=self.seed,
            sparkline=self.sparkline,
            replay=self.replay,
            validation_status=self.validation_status,
            risk_score=self.risk_score,
            confidence=self.confidence,
        )


class AnalyzeRequest(ApiModel):
    log: Any = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
