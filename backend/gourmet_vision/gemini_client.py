import base64
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .schemas import MenuAnalysisResponse

logger = logging.getLogger(__name__)

MENU_PARSING_MODEL = os.getenv("MENU_PARSING_MODEL", "gemini-3-flash-preview")
IMAGE_GEN_MODEL = os.getenv("IMAGE_GEN_MODEL", "gemini-2.5-flash-image")

MENU_SYSTEM_INSTRUCTION = (
    "You are a culinary expert assisting a food photographer. "
    "Extract all menu items accurately, including beverages."
)

MENU_PROMPT = (
    "Analyze this menu image. Identify all distinct items listed, including food and drinks. "
    "For each item, provide the original name, an English translation, the price (if available), "
    "the category/section it belongs to, and a short visual description based on its ingredients."
)

# Wire names are camelCase, so the schema is spelled out rather than derived
# from the pydantic model.
MENU_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "dishes": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "originalName": {
                        "type": "STRING",
                        "description": "The name of the item as it appears on the menu.",
                    },
                    "englishTranslation": {
                        "type": "STRING",
                        "description": "English translation of the name.",
                    },
                    "ingredientsOrDescription": {
                        "type": "STRING",
                        "description": "A concise visual description of the main ingredients and presentation.",
                    },
                    "price": {
                        "type": "STRING",
                        "description": "The price of the item including currency symbol. If not found, leave empty.",
                    },
                    "category": {
                        "type": "STRING",
                        "description": "The category or section this item belongs to (e.g., 'Starters', 'Mains', 'Drinks', 'Desserts').",
                    },
                },
                "required": ["originalName", "englishTranslation", "ingredientsOrDescription"],
            },
        },
    },
    "required": ["dishes"],
}


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if "```" not in stripped:
        return stripped
    m = re.search(r"```(?:json)?\s*(.*?)\s*```", stripped, flags=re.DOTALL | re.IGNORECASE)
    if m is not None:
        return m.group(1).strip()
    return stripped.replace("```", "").strip()


def _first_json_object(text: str) -> Optional[str]:
    # First balanced {...} span, skipping braces inside strings.
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _escape_raw_newlines(text: str) -> str:
    # Models sometimes emit literal newlines inside quoted strings.
    out: list[str] = []
    in_string = False
    escape = False
    for ch in text:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            elif ch in "\r\n":
                out.append("\\n")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _remove_trailing_commas(text: str) -> str:
    return re.sub(r",\s*([\]\}])", r"\1", text)


def parse_menu_json(text: str) -> MenuAnalysisResponse:
    """
    Parse a model text body into a MenuAnalysisResponse.

    Tolerates markdown fences, prose around the JSON object, raw newlines in
    strings and trailing commas. Raises ValueError when nothing usable is found
    and pydantic's ValidationError when the shape is wrong.
    """
    stripped = _strip_code_fences(text)
    candidates = [stripped]
    balanced = _first_json_object(stripped)
    if balanced is not None and balanced != stripped:
        candidates.append(balanced)

    last_error: Optional[Exception] = None
    for candidate in candidates:
        for attempt in (candidate, _remove_trailing_commas(_escape_raw_newlines(candidate))):
            try:
                data = json.loads(attempt)
            except json.JSONDecodeError as e:
                last_error = e
                continue
            return MenuAnalysisResponse.model_validate(data)

    raise ValueError(f"Model response is not valid JSON: {last_error}")


def _response_parts(response: object) -> List[Any]:
    direct = getattr(response, "parts", None)
    if direct:
        return list(direct)
    collected: List[Any] = []
    for candidate in getattr(response, "candidates", None) or []:
        collected.extend(getattr(getattr(candidate, "content", None), "parts", None) or [])
    return collected


def _extract_text(response: object) -> Optional[str]:
    text = getattr(response, "text", None)
    if isinstance(text, str) and text.strip():
        return text
    chunks = [p.text for p in _response_parts(response) if isinstance(getattr(p, "text", None), str)]
    return "".join(chunks).strip() or None


def _empty_response_error(response: object) -> RuntimeError:
    details = []
    candidates = getattr(response, "candidates", None) or []
    if candidates and getattr(candidates[0], "finish_reason", None) is not None:
        details.append(f"finish_reason={candidates[0].finish_reason}")
    feedback = getattr(response, "prompt_feedback", None)
    if feedback is not None:
        details.append(f"prompt_feedback={feedback!r}")
    suffix = f" ({', '.join(details)})" if details else ""
    return RuntimeError(f"Gemini returned no text{suffix}")


def _inline_image_bytes(response: object) -> Optional[bytes]:
    for part in _response_parts(response):
        blob = getattr(part, "inline_data", None)
        data = getattr(blob, "data", None)
        if not data:
            continue
        # Older SDKs hand back base64 text instead of bytes.
        return base64.b64decode(data) if isinstance(data, str) else data
    return None


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class GeminiClient:
    """Thin async wrapper over google-genai for the two calls this app makes."""

    def __init__(
        self,
        api_key: str,
        menu_model: str = MENU_PARSING_MODEL,
        image_model: str = IMAGE_GEN_MODEL,
    ) -> None:
        from google import genai

        self.menu_model = menu_model
        self.image_model = image_model
        timeout_ms = max(1000, int(_env_float("GENAI_HTTP_TIMEOUT_SECONDS", 120.0) * 1000))
        self._client = genai.Client(api_key=api_key, http_options={"timeout": timeout_ms})

    async def parse_menu_from_image_async(
        self,
        *,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
    ) -> MenuAnalysisResponse:
        from google.genai import types

        config = types.GenerateContentConfig(
            system_instruction=MENU_SYSTEM_INSTRUCTION,
            response_mime_type="application/json",
            response_schema=MENU_RESPONSE_SCHEMA,
            max_output_tokens=int(_env_float("VLM_MAX_OUTPUT_TOKENS", 8192)),
            temperature=_env_float("VLM_TEMPERATURE", 0.2),
        )
        response = await self._client.aio.models.generate_content(
            model=self.menu_model,
            contents=[types.Part.from_bytes(data=image_bytes, mime_type=mime_type), MENU_PROMPT],
            config=config,
        )

        parsed = getattr(response, "parsed", None)
        if isinstance(parsed, dict):
            try:
                return MenuAnalysisResponse.model_validate(parsed)
            except ValidationError:
                logger.info("Structured menu payload failed validation; re-parsing text body")

        text = _extract_text(response)
        if text is None:
            raise _empty_response_error(response)
        return parse_menu_json(text)

    async def generate_food_image_bytes_async(self, *, prompt: str, aspect_ratio: str = "4:3") -> bytes:
        logger.info("Generating dish image model=%s prompt_len=%d", self.image_model, len(prompt))
        if self.image_model.startswith("imagen-"):
            return await self._generate_with_imagen(prompt, aspect_ratio)

        from google.genai import types

        response = await self._client.aio.models.generate_content(
            model=self.image_model,
            contents=[prompt],
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        data = _inline_image_bytes(response)
        if data is None:
            raise RuntimeError(f"{self.image_model} returned no inline image")
        return data

    async def _generate_with_imagen(self, prompt: str, aspect_ratio: str) -> bytes:
        from google.genai import types

        result = await self._client.aio.models.generate_images(
            model=self.image_model,
            prompt=prompt,
            config=types.GenerateImagesConfig(number_of_images=1, aspect_ratio=aspect_ratio),
        )
        images = result.generated_images or []
        if not images or images[0].image is None:
            raise RuntimeError(f"{self.image_model} returned no images")
        return images[0].image.image_bytes
