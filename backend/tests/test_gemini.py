import base64

import pytest
import requests

import config
import gemini
from exceptions import GeminiError


class _Response:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code}", response=self)

    def json(self):
        return self._payload


@pytest.fixture
def gateway(monkeypatch):
    sent = []

    def install(payload, status_code=200):
        def fake_post(url, json, headers, params, timeout):
            sent.append({"url": url, "json": json, "params": params})
            return _Response(payload, status_code)
        monkeypatch.setattr(requests, "post", fake_post)
        return sent

    return install


def _text_result(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_build_contents_maps_roles_and_keeps_recent_history():
    context = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(14)]
    contents = gemini.build_contents("agora", context)

    assert len(contents) == config.GEMINI_HISTORY_TURNS + 1
    assert contents[0]["parts"][0]["text"] == "m4"
    assert contents[1]["role"] == "model"
    assert contents[-1] == {"role": "user", "parts": [{"text": "agora"}]}


def test_attachment_parts(tmp_path):
    image = tmp_path / "foto.png"
    image.write_bytes(b"png-bytes")
    parts = gemini.attachment_parts([
        {"type": "image", "mimeType": "image/png", "path": str(image), "filename": "foto.png"},
        {"type": "other", "originalName": "nota.txt", "extractedText": "lista de compras"},
    ])

    assert parts[0]["inline_data"] == {"mime_type": "image/png", "data": base64.b64encode(b"png-bytes").decode()}
    assert "lista de compras" in parts[1]["text"]


def test_generate_response_sends_personalised_instruction(gateway):
    sent = gateway(_text_result("Oi, Ana!"))

    assert gemini.generate_response("oi", username="ana") == "Oi, Ana!"
    body = sent[0]["json"]
    assert "ana" in body["systemInstruction"]["parts"][0]["text"]
    assert sent[0]["params"] == {"key": "test-key"}
    assert config.GEMINI_TEXT_MODEL in sent[0]["url"]


def test_generate_image_returns_data_uri(gateway):
    sent = gateway({"candidates": [{"content": {"parts": [
        {"text": "pronto"},
        {"inlineData": {"mimeType": "image/jpeg", "data": "abc123"}},
    ]}}]})

    assert gemini.generate_image("um gato") == "data:image/jpeg;base64,abc123"
    assert sent[0]["json"]["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]


def test_image_response_without_image_raises(gateway):
    gateway(_text_result("não posso desenhar isso"))
    with pytest.raises(GeminiError):
        gemini.generate_image("algo")


def test_blocked_content_raises(gateway):
    gateway({"candidates": [{"finishReason": "SAFETY", "safetyRatings": [
        {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "probability": "HIGH"},
    ]}]})
    with pytest.raises(GeminiError, match="SAFETY"):
        gemini.generate_response("oi")


def test_http_error_message_is_extracted(gateway):
    gateway({"error": {"message": "API key not valid"}}, status_code=400)
    with pytest.raises(GeminiError, match="Error 400: API key not valid"):
        gemini.generate_response("oi")


def test_missing_api_key(monkeypatch):
    monkeypatch.setattr(config, "GEMINI_API_KEY", "")
    with pytest.raises(GeminiError):
        gemini.generate_response("oi")


def test_edit_image_requires_readable_file(tmp_path):
    with pytest.raises(GeminiError):
        gemini.edit_image(tmp_path / "missing.png", "mude a cor")
