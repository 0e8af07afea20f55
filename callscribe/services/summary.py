"""
Post-call summary: the final transcript goes to an OpenAI chat model, which
answers with a "Summary:" section and a numbered "Action Required:" list.

Failures never raise to the caller. A missing transcript, a missing key or a
failed request each yield a fixed fallback text in the same two-section shape,
flagged generated=False.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import httpx

from callscribe.config import Settings, get_settings
from callscribe.errors import ProviderError

logger = logging.getLogger(__name__)

MISSING_TRANSCRIPT_SUMMARY = (
    "Summary:\nCould not generate summary due to missing transcript text.\n\n"
    "Action Required:\n1. Try processing the audio again"
)
FAILED_SUMMARY = (
    "Summary:\nAn error occurred while generating the summary with OpenAI.\n\n"
    "Action Required:\n1. Check your OpenAI API key settings\n2. Try processing the audio again"
)

_SYSTEM_PROMPT = (
    "You are an assistant that summarizes phone conversations and extracts action items. "
    'You should format your response with two clear sections: "Summary:" followed by a concise summary, '
    'and "Action Required:" followed by a numbered list of specific action items that need to be addressed.'
)
_USER_PROMPT = (
    "Please analyze this conversation and provide a clear summary followed by a numbered list "
    "of action items that need to be addressed:\n\n{transcript}"
)

_ACTIONS_SPLIT = re.compile(r"Action (?:Required|Items):", re.IGNORECASE)
_NUMBERED = re.compile(r"^\s*\d+\.\s*(.+)$")


@dataclass
class CallSummary:
    text: str
    summary: str
    action_items: list[str] = field(default_factory=list)
    generated: bool = True


def split_summary(raw: str) -> tuple[str, list[str]]:
    """Split model output into (summary paragraph, action items)."""
    raw = (raw or "").strip()
    parts = _ACTIONS_SPLIT.split(raw, maxsplit=1)
    if len(parts) == 1:
        # No section header: "<summary>\n1. first\n2. second"
        numbered = re.split(r"\n\d+\.\s", raw)
        summary = re.sub(r"^\s*Summary:", "", numbered[0], flags=re.IGNORECASE).strip()
        return summary, [item.strip() for item in numbered[1:] if item.strip()]
    summary = re.sub(r"^\s*Summary:", "", parts[0], flags=re.IGNORECASE).strip()
    items: list[str] = []
    for line in parts[1].splitlines():
        m = _NUMBERED.match(line)
        if m:
            items.append(m.group(1).strip())
    return summary, items


def _fallback(text: str) -> CallSummary:
    summary, items = split_summary(text)
    return CallSummary(text=text, summary=summary, action_items=items, generated=False)


class SummaryService:
    def __init__(self, settings: Settings | None = None) -> None:
        s = settings or get_settings()
        self._api_key = (s.OPENAI_API_KEY or "").strip()
        self._url = f"{s.OPENAI_API_URL.rstrip('/')}/chat/completions"
        self._model = s.SUMMARY_MODEL
        self._max_tokens = s.SUMMARY_MAX_TOKENS
        self._timeout = s.SUMMARY_TIMEOUT_SECONDS

    async def _complete(self, transcript_text: str) -> str:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": _USER_PROMPT.format(transcript=transcript_text)},
            ],
            "temperature": 0.3,
            "max_tokens": self._max_tokens,
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self._url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
            )
        if resp.status_code == 429:
            raise ProviderError("rate_limited", "Rate limit exceeded. Please try again in a few moments.", "openai")
        if resp.status_code == 401:
            raise ProviderError("unauthorized", "Invalid OpenAI API key", "openai")
        resp.raise_for_status()
        data = resp.json()
        return (data["choices"][0]["message"]["content"] or "").strip()

    async def summarize(self, transcript_text: str) -> CallSummary:
        text = (transcript_text or "").strip()
        if not text:
            logger.warning("No transcript text to summarize")
            return _fallback(MISSING_TRANSCRIPT_SUMMARY)
        if not self._api_key:
            logger.warning("OPENAI_API_KEY is not set; cannot generate summary")
            return _fallback(FAILED_SUMMARY)
        try:
            raw = await self._complete(text)
        except (httpx.HTTPError, ProviderError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Summary generation failed: %s", e)
            return _fallback(FAILED_SUMMARY)
        if not raw:
            return _fallback(FAILED_SUMMARY)
        summary, items = split_summary(raw)
        logger.info("Summary generated (%d action items)", len(items))
        return CallSummary(text=raw, summary=summary, action_items=items)
