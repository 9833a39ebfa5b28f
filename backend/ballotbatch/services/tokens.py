"""Rough token estimates for admission control. Not billing-exact."""

import math

from ballotbatch.services.types import BatchRequest, TokenEstimate

CHARS_PER_TOKEN = 4


def estimate_tokens_for_request(request: BatchRequest) -> int:
    total_chars = 0
    for content in request.get("contents") or []:
        for part in content.get("parts") or []:
            text = part.get("text")
            if isinstance(text, str):
                total_chars += len(text)
    return math.ceil(total_chars / CHARS_PER_TOKEN) or 1


def estimate_tokens_for_batch(requests: list[BatchRequest]) -> TokenEstimate:
    per_request = [estimate_tokens_for_request(r) for r in requests]
    return TokenEstimate(total=sum(per_request), per_request=per_request)
