from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from callaudit.core.models import Job, Report

logger = logging.getLogger(__name__)


def build_payload(job: Job, report: Optional[Report] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "job_id": job.id,
        "status": job.status.value,
        "error": job.error,
        "final_score": None,
        "ethics_flag": None,
    }
    if report is not None:
        payload["final_score"] = report.scores.get("final_score")
        payload["ethics_flag"] = report.scores.get("ethics_flag")
    return payload


class WebhookNotifier:
    def __init__(self, cfg_webhook: Mapping[str, Any], client: Optional[httpx.Client] = None) -> None:
        self.enabled = bool(cfg_webhook.get("enabled", True))
        self.timeout = float(cfg_webhook.get("timeout_sec", 10))
        self._client = client

    def notify(self, job: Job, report: Optional[Report] = None) -> bool:
        """POST the job outcome to its webhook. Delivery problems are only logged."""
        if not self.enabled or not job.webhook_url:
            return False
        payload = build_payload(job, report)
        try:
            if self._client is not None:
                response = self._client.post(job.webhook_url, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(job.webhook_url, json=payload)
            response.raise_for_status()
        # InvalidURL is not an HTTPError
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Webhook for job %s to %s failed: %s", job.id, job.webhook_url, exc)
            return False
        logger.info("Webhook for job %s delivered (%s)", job.id, response.status_code)
        return True
