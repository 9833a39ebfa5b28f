"""Shared FastAPI dependencies."""

from fastapi import Depends

from ballotbatch.config import BatchSettings, load_settings
from ballotbatch.services.gemini import GeminiBatchGateway, InferenceUnavailableError, make_client


def get_settings() -> BatchSettings:
    return load_settings()


def get_gateway(settings: BatchSettings = Depends(get_settings)) -> GeminiBatchGateway:
    if not settings.inference_available:
        raise InferenceUnavailableError()
    return GeminiBatchGateway(make_client(settings))
