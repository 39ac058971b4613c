from unittest.mock import MagicMock

import httpx
import pytest

from ugc_studio import gemini
from ugc_studio.errors import ProviderRequestError, ValidationError


def _reply(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body or {}
    resp.text = str(body)
    return resp


@pytest.fixture
def post(monkeypatch):
    monkeypatch.setattr(gemini, "GEMINI_API_KEY", "gemini-test")
    fake = MagicMock()
    monkeypatch.setattr(httpx, "post", fake)
    return fake


class TestBuildPrompts:

    def test_word_budget_scales_with_scenes(self):
        system, user = gemini.build_prompts("Serum", None, "friendly", 32)
        assert "64" in system and "88" in system
        assert "Serum" in user

    def test_language_name(self):
        system, _ = gemini.build_prompts("Serum", None, "friendly", 8, language="en")
        assert gemini.LANGUAGE_NAMES["en"] in system

    def test_description_optional(self):
        _, with_desc = gemini.build_prompts("Serum", "Vitamin C", "friendly", 8)
        _, without = gemini.build_prompts("Serum", None, "friendly", 8)
        assert "Vitamin C" in with_desc
        assert "Description:" not in without


class TestGenerateScript:

    def test_returns_stripped_text(self, post):
        post.return_value = _reply(body={"candidates": [{"content": {"parts": [{"text": "  Hello!  \n"}]}}]})
        assert gemini.generate_script("Serum", duration=8) == "Hello!"
        assert "gemini-test" in post.call_args[0][0]

    def test_missing_product_name(self, post):
        with pytest.raises(ValidationError):
            gemini.generate_script("")
        post.assert_not_called()

    def test_http_error(self, post):
        post.return_value = _reply(status_code=429, body={"error": "quota"})
        with pytest.raises(ProviderRequestError) as exc:
            gemini.generate_script("Serum")
        assert exc.value.http_status == 429

    def test_empty_candidates(self, post):
        post.return_value = _reply(body={"candidates": []})
        with pytest.raises(ProviderRequestError):
            gemini.generate_script("Serum")

    def test_transport_error(self, post):
        post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(ProviderRequestError):
            gemini.generate_script("Serum")

    def test_missing_key(self, monkeypatch):
        monkeypatch.setattr(gemini, "GEMINI_API_KEY", "")
        with pytest.raises(ProviderRequestError):
            gemini.generate_script("Serum")

    def test_non_json_body(self, post):
        post.return_value = _reply()
        post.return_value.json.side_effect = ValueError("Expecting value")
        with pytest.raises(ProviderRequestError):
            gemini.generate_script("Serum")
