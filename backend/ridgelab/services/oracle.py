"""
Qualitative oracle client.

Sends the original and processed image references to an external
vision-capable reviewer and returns its structured opinion. The reviewer is
slow and fallible; every failure surfaces as OracleUnavailable so the runner
can degrade to a missing report.
"""
from __future__ import annotations

import logging
from typing import Optional

import requests
from pydantic import ValidationError

from ridgelab.errors import OracleUnavailable
from ridgelab.schemas import OracleReport
from ridgelab.settings import settings

logger = logging.getLogger("ridgelab.oracle")

SYSTEM_PROMPT = (
    "You are an expert forensic fingerprint analysis specialist. Compare the original "
    "fingerprint with the textured result and report assessment, recommendations, "
    "notes and a confidence between 0 and 1 as JSON."
)


class OracleClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.oracle_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.oracle_api_key
        self.timeout = timeout if timeout is not None else settings.oracle_timeout_s
        self.session = requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def assess(self, original_ref: str, processed_ref: str, elapsed_ms: int) -> OracleReport:
        if not self.configured:
            raise OracleUnavailable("Qualitative oracle is not configured.")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "system": SYSTEM_PROMPT,
            "original_image_url": original_ref,
            "processed_image_url": processed_ref,
            "processing_time_ms": elapsed_ms,
            "prompt_version": settings.prompt_version,
        }
        try:
            response = self.session.post(self.base_url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            logger.warning("Oracle request failed: %s", exc)
            raise OracleUnavailable(f"Oracle request failed: {exc}") from exc
        except ValueError as exc:
            raise OracleUnavailable("Oracle returned a non-JSON response.") from exc

        try:
            return OracleReport.model_validate(data)
        except ValidationError as exc:
            raise OracleUnavailable(
                "Oracle returned a malformed report.",
                details={"errors": exc.errors(include_url=False)},
            ) from exc
