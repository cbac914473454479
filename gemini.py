from __future__ import annotations

import json
import logging
import os

import requests

from ticketing import TICKET_TYPES

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")

PRIORITY_LABEL_VALUES = {
    "baja": 25,
    "media": 50,
    "alta": 75,
    "crítica": 95,
    "critica": 95,
}

ANALYSIS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "summary": {"type": "STRING"},
        "suggestedCategory": {"type": "STRING"},
        "priority": {"type": "STRING", "description": "Baja, Media, Alta, Crítica"},
    },
    "required": ["summary", "suggestedCategory", "priority"],
}


class GeminiServiceError(RuntimeError):
    """Raised when a Gemini API request cannot be fulfilled."""


def _generate(payload: dict, timeout: int = 30) -> str:
    if not GEMINI_API_KEY:
        raise GeminiServiceError("GEMINI_API_KEY is not configured.")
    url = f"{GEMINI_BASE_URL.rstrip('/')}/models/{GEMINI_MODEL}:generateContent"
    try:
        response = requests.post(
            url,
            params={"key": GEMINI_API_KEY},
            headers={"Content-Type": "application/json"},
            json=payload,
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise GeminiServiceError(f"Gemini request failed: {exc}") from exc
    try:
        data = response.json()
    except ValueError as exc:
        raise GeminiServiceError("Gemini response was not valid JSON.") from exc
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as exc:
        raise GeminiServiceError("Text missing from Gemini response.") from exc
    text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
    if not text.strip():
        raise GeminiServiceError("Gemini returned an empty response.")
    return text.strip()


def suggested_priority(label: str | None) -> int | None:
    return PRIORITY_LABEL_VALUES.get((label or "").strip().lower())


def analyze_ticket_description(description: str) -> dict:
    """Summarize a ticket description and suggest its category and priority."""

    if not (description or "").strip():
        raise GeminiServiceError("Cannot analyze an empty description.")
    prompt = (
        "Analiza este problema técnico o solicitud y genera un resumen conciso de una frase "
        f"y una sugerencia de categoría ({', '.join(TICKET_TYPES)}).\n\n"
        f'Descripción: "{description.strip()}"'
    )
    text = _generate(
        {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": ANALYSIS_SCHEMA,
            },
        }
    )
    try:
        analysis = json.loads(text)
    except json.JSONDecodeError as exc:
        raise GeminiServiceError("Gemini analysis was not valid JSON.") from exc
    if not isinstance(analysis, dict):
        raise GeminiServiceError("Gemini analysis was not an object.")
    analysis["suggestedPriorityValue"] = suggested_priority(analysis.get("priority"))
    return analysis


def generate_smart_response(ticket_description: str, user_query: str) -> str:
    prompt = (
        "Eres un asistente técnico de Capital Inteligente.\n"
        f'Ticket original: "{(ticket_description or "").strip()}"\n'
        f'Consulta del usuario: "{(user_query or "").strip()}"\n'
        "Genera una respuesta profesional, empática y técnica para ayudar al administrador a responder."
    )
    return _generate(
        {
            "systemInstruction": {
                "parts": [
                    {"text": "Sé profesional y directo. Usa el tono corporativo de Capital Inteligente."}
                ]
            },
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        },
        timeout=45,
    )
