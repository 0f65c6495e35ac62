"""
Tests for the OpenAI vision client wrapper
"""

import pytest

from extraction.vision_client import OpenAIVisionClient


@pytest.mark.unit
def test_sdk_retries_are_disabled():
    client = OpenAIVisionClient(api_key="sk-test")._get_client()
    assert client.max_retries == 0


@pytest.mark.unit
def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        OpenAIVisionClient(api_key=None)._get_client()
