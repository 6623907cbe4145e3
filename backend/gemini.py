import base64
import json
import logging
import mimetypes
from pathlib import Path
from typing import List, Optional

import requests

import config
from exceptions import GeminiError

logger = logging.getLogger(__name__)

API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

SYSTEM_INSTRUCTION = """Você é Qisa, uma assistente de IA avançada, amigável e prestativa.
Suas características principais:
- Você é especializada em conversação natural e geração de imagens
- Sempre responda em português brasileiro
- Seja cordial, educada e empática
- Forneça respostas informativas e úteis
- Quando solicitado para gerar imagens, seja criativa e detalhada
- Mantenha o contexto da conversa e se refira às mensagens anteriores quando relevante
- Você pode ajudar com qualquer assunto: tecnologia, ciência, arte, educação, entretenimento, etc."""

FALLBACK_REPLY = "Desculpe, não consegui processar sua mensagem."


def _system_text(username: Optional[str]) -> str:
    if username:
        return f"{SYSTEM_INSTRUCTION}\n\nVocê está conversando com {username}. Chame o usuário pelo nome quando fizer sentido."
    return SYSTEM_INSTRUCTION


def _read_base64(path) -> Optional[str]:
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("[Gemini] Attachment not found: %s", file_path)
        return None
    content = file_path.read_bytes()
    if not content:
        logger.warning("[Gemini] Empty attachment: %s", file_path)
        return None
    return base64.b64encode(content).decode("utf-8")


def attachment_parts(attachments: Optional[List[dict]]) -> List[dict]:
    """Turn uploaded-file records into Gemini content parts.

    Each attachment is a dict as produced by ``file_processor.process_file``
    plus a server-side ``path``. Images and PDFs travel as inline base64,
    PDFs also carry their extracted text so the model sees both.
    """
    parts = []
    for item in attachments or []:
        kind = item.get("type")
        mime_type = item.get("mimeType") or mimetypes.guess_type(item.get("originalName", ""))[0]
        name = item.get("originalName") or item.get("filename", "arquivo")
        if kind in ("image", "pdf") and item.get("path"):
            data = _read_base64(item["path"])
            if data:
                parts.append({"inline_data": {"mime_type": mime_type or "application/octet-stream", "data": data}})
        if kind == "pdf" and item.get("extractedText"):
            parts.append({"text": f"\n[Conteúdo do PDF {name}]\n{item['extractedText']}"})
        elif kind == "other" and item.get("extractedText"):
            parts.append({"text": f"\n[Arquivo {name}]\n{item['extractedText']}"})
    return parts


def build_contents(message: str, context: Optional[List[dict]] = None, attachments: Optional[List[dict]] = None) -> List[dict]:
    contents = []
    for msg in (context or [])[-config.GEMINI_HISTORY_TURNS:]:
        role = "model" if msg.get("role") == "assistant" else "user"
        text = msg.get("content") or ""
        if text:
            contents.append({"role": role, "parts": [{"text": text}]})

    parts = []
    if message:
        parts.append({"text": message})
    parts.extend(attachment_parts(attachments))
    if not parts:
        parts.append({"text": "Analise isto, por favor."})
    contents.append({"role": "user", "parts": parts})
    return contents


def _post(model: str, payload: dict) -> dict:
    if not config.GEMINI_API_KEY or config.GEMINI_API_KEY.strip() == "":
        raise GeminiError("GEMINI_API_KEY not configured")

    url = API_URL.format(model=model)
    try:
        response = requests.post(
            url,
            json=payload,
            headers={"Content-Type": "application/json"},
            params={"key": config.GEMINI_API_KEY},
            timeout=config.GEMINI_TIMEOUT,
        )
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        error_msg = f"Error {e.response.status_code}: "
        try:
            error_info = e.response.json().get("error", {})
            if isinstance(error_info, dict):
                error_msg += error_info.get("message", error_info.get("status", ""))
            else:
                error_msg += str(error_info)
        except ValueError:
            error_msg += e.response.text[:500]
        raise GeminiError(error_msg) from e
    except requests.exceptions.RequestException as e:
        raise GeminiError(f"Network error: {e}") from e

    try:
        result = response.json()
    except json.JSONDecodeError as e:
        raise GeminiError(f"Invalid JSON response: {e}. Preview: {response.text[:200]}") from e
    if not result:
        raise GeminiError("Empty response received")
    return result


def _first_parts(result: dict) -> List[dict]:
    candidates = result.get("candidates") or []
    if not candidates:
        feedback = result.get("promptFeedback", {})
        raise GeminiError(f"No candidates returned. Feedback: {feedback}")

    candidate = candidates[0]
    finish_reason = candidate.get("finishReason", "")
    if finish_reason in ("SAFETY", "RECITATION", "PROHIBITED_CONTENT"):
        safety_ratings = candidate.get("safetyRatings", [])
        safety_info = ", ".join(f"{r.get('category', 'Unknown')}: {r.get('probability', 'Unknown')}" for r in safety_ratings)
        raise GeminiError(f"Content blocked. Reason: {finish_reason}. Details: {safety_info}")

    content = candidate.get("content") or {}
    parts = content.get("parts")
    if not isinstance(parts, list):
        raise GeminiError("Resposta inválida do modelo")
    return parts


def _extract_text(result: dict) -> str:
    texts = [str(part["text"]) for part in _first_parts(result) if isinstance(part, dict) and "text" in part]
    return "".join(texts).strip()


def _extract_image(result: dict) -> str:
    for part in _first_parts(result):
        if not isinstance(part, dict):
            continue
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return f"data:{mime_type};base64,{inline['data']}"
    raise GeminiError("Nenhuma imagem foi gerada")


def generate_response(message: str, context: Optional[List[dict]] = None,
                      username: Optional[str] = None, attachments: Optional[List[dict]] = None) -> str:
    payload = {
        "contents": build_contents(message, context, attachments),
        "systemInstruction": {"parts": [{"text": _system_text(username)}]},
        "generationConfig": {"temperature": 0.7},
    }
    result = _post(config.GEMINI_TEXT_MODEL, payload)
    text = _extract_text(result)
    return text or FALLBACK_REPLY


def _image_payload(parts: List[dict]) -> dict:
    return {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }


def generate_image(prompt: str) -> str:
    """Generate an image and return it as a ``data:`` URI."""
    result = _post(config.GEMINI_IMAGE_MODEL, _image_payload([{"text": prompt}]))
    return _extract_image(result)


def edit_image(image_path, prompt: str) -> str:
    data = _read_base64(image_path)
    if not data:
        raise GeminiError(f"Image not readable: {image_path}")
    mime_type = mimetypes.guess_type(str(image_path))[0] or "image/png"
    parts = [
        {"inline_data": {"mime_type": mime_type, "data": data}},
        {"text": prompt},
    ]
    result = _post(config.GEMINI_IMAGE_MODEL, _image_payload(parts))
    return _extract_image(result)
