"""
Vision assessment capability.

The engine treats image assessment as one synchronous call: give it an
image reference, get back four sub-scores plus issue text. Any failure of
that call (timeout, transport error, 429/5xx, unparseable body) surfaces as
TransientExternalError so callers can retry with backoff.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import httpx

from ..exceptions import TransientExternalError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ImageRef:
    """What the engine knows about an image it wants assessed."""
    image_id: str
    url: Optional[str] = None
    species_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"image_id": self.image_id, "url": self.url, "species_id": self.species_id}


@dataclass
class VisionResult:
    """Raw output of one vision assessment."""
    visibility: float
    clarity: float
    technical: float
    educational: float
    issues: List[str] = field(default_factory=list)
    detected_features: List[str] = field(default_factory=list)

    @property
    def sub_scores(self) -> Dict[str, float]:
        return {
            "visibility": self.visibility,
            "clarity": self.clarity,
            "technical": self.technical,
            "educational": self.educational,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisionResult":
        scores = data.get("scores", data)
        return cls(
            visibility=float(scores["visibility"]),
            clarity=float(scores["clarity"]),
            technical=float(scores["technical"]),
            educational=float(scores["educational"]),
            issues=[str(i) for i in data.get("issues", [])],
            detected_features=[str(f) for f in data.get("features", [])],
        )


class VisionAssessor(ABC):
    """Abstract base for vision assessment backends."""

    @abstractmethod
    def assess(self, image: ImageRef) -> VisionResult:
        """Assess one image. Raises TransientExternalError on failure."""
        pass

    def close(self) -> None:
        """Release resources."""
        pass


class HttpVisionAssessor(VisionAssessor):
    """
    Vision assessment over HTTP.

    POSTs {"image_id", "url", "species_id"} to the endpoint and expects
    {"scores": {visibility, clarity, technical, educational}, "issues": [...],
    "features": [...]} back.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            endpoint: Assessment URL
            api_key: Bearer token sent with every request
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (tests pass one with a mock transport)
        """
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.endpoint = endpoint
        self._client = client or httpx.Client(timeout=timeout, headers=headers)
        self._owns_client = client is None

    def assess(self, image: ImageRef) -> VisionResult:
        if not image.image_id:
            raise ValidationError("image_id is required")

        try:
            response = self._client.post(self.endpoint, json=image.to_dict())
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"Vision assessment timed out for {image.image_id}") from e
        except httpx.HTTPError as e:
            raise TransientExternalError(
                f"Vision assessment request failed for {image.image_id}: {e}"
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError(
                f"Vision service returned {response.status_code} for {image.image_id}"
            )
        if response.status_code >= 400:
            raise ValidationError(
                f"Vision service rejected {image.image_id}: "
                f"{response.status_code} - {response.text[:200]}"
            )

        try:
            return VisionResult.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise TransientExternalError(
                f"Unparseable vision response for {image.image_id}: {e}"
            ) from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
