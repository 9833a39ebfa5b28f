"""Transactional email via the Resend HTTP API."""

import html
import logging

import httpx

from ballotbatch.config import BatchSettings

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"


class NotificationError(Exception):
    """Raised when an email could not be handed to Resend."""


class ResendNotifier:
    """Send one HTML email to a recipient list.

    In dry-run mode the message is only logged. Callers treat any
    NotificationError as non-fatal.
    """

    def __init__(self, settings: BatchSettings, http: httpx.Client | None = None) -> None:
        self._settings = settings
        self._http = http

    def send(self, recipients: list[str], subject: str, html_body: str) -> None:
        to = sorted({r.strip() for r in recipients if r and r.strip()})
        if not to:
            raise NotificationError("No recipients")

        if self._settings.email_dry_run:
            logger.info("email dry-run to %s: %s", ", ".join(to), subject)
            return

        if not self._settings.resend_api_key:
            raise NotificationError("RESEND_API_KEY environment variable is not set")

        payload = {"from": self._settings.resend_from, "to": to, "subject": subject, "html": html_body}
        headers = {"Authorization": f"Bearer {self._settings.resend_api_key}"}
        try:
            if self._http is not None:
                response = self._http.post(RESEND_ENDPOINT, json=payload, headers=headers)
            else:
                response = httpx.post(RESEND_ENDPOINT, json=payload, headers=headers, timeout=30)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"Resend request failed: {exc}") from exc
        logger.info("email sent to %s: %s", ", ".join(to), subject)


# ── Templates ─────────────────────────────────────────────────────────────────


def analyze_completed_email(job_id: int, display_name: str | None, success_count: int) -> tuple[str, str]:
    label = html.escape(display_name or str(job_id))
    subject = f"Gemini analyze completed for job #{job_id}"
    body = (
        f"<p>Gemini analysis finished for job <strong>{label}</strong>.</p>"
        f"<p>{success_count} group(s) ready for structuring.</p>"
    )
    return subject, body


def ingest_completed_email(job_id: int, display_name: str | None, record_count: int) -> tuple[str, str]:
    label = html.escape(display_name or str(job_id))
    subject = f"Gemini ingestion completed for job #{job_id}"
    body = (
        f"<p>Gemini batch job <strong>{label}</strong> finished ingestion.</p>"
        f"<p>Created {record_count} election records.</p>"
    )
    return subject, body
