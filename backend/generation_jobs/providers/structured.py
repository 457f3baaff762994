import json
import logging
from typing import Any, Dict, List, Optional

from ..credentials import ResolvedCredential
from ..errors import ErrorClass, GenerationError
from .base import post_json

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

SCRIPT_SYSTEM_PROMPT = """You turn source text into a narrated explainer video script.
Return JSON that follows the schema exactly:
1. version is always "1.0".
2. Between 3 and 50 scenes.
3. Each dialogue is 60 to 140 characters.
4. Each scene has 2 or 3 bullets of 8 to 24 characters.
5. Each image_prompt is 30 to 400 characters, concrete, preferably in English.
6. role is one of hook, context, main_point, evidence, timeline, analysis, summary, cta.
7. idx starts at 1 with no gaps, and metadata.total_scenes equals the number of scenes."""

REPAIR_SYSTEM_PROMPT = """You repair JSON documents so they satisfy a schema.
Keep the content. Only fix the format: shorten or pad fields to the allowed lengths,
fill missing required fields, renumber idx from 1, and make metadata.total_scenes
match the number of scenes."""


def _message_content(data: Dict[str, Any]) -> str:
    choices = data.get("choices") if isinstance(data.get("choices"), list) else []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") if isinstance(choices[0].get("message"), dict) else {}
    refusal = str(message.get("refusal") or "").strip()
    if refusal:
        return ""
    return str(message.get("content") or "").strip()


class StructuredScriptClient:
    provider = "openai"

    def __init__(self, model_name: str, *, base_url: str = OPENAI_CHAT_URL, timeout: int = 120):
        self.model_name = model_name
        self.base_url = base_url
        self.timeout = timeout

    def _call(
        self,
        messages: List[Dict[str, str]],
        output_schema: Dict[str, Any],
        *,
        credential: ResolvedCredential,
        temperature: float,
        schema_name: str,
    ) -> Dict[str, Any]:
        body = {
            "model": self.model_name,
            "messages": messages,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "strict": True, "schema": output_schema},
            },
            "temperature": temperature,
        }
        data = post_json(
            self.base_url,
            provider=self.provider,
            headers={"Authorization": f"Bearer {credential.api_key}", "Content-Type": "application/json"},
            body=body,
            timeout=self.timeout,
        )
        content = _message_content(data if isinstance(data, dict) else {})
        if not content:
            raise GenerationError("No content in model response", error_class=ErrorClass.SCHEMA_INVALID)
        try:
            payload = json.loads(content)
        except ValueError as exc:
            raise GenerationError(
                "Generated content is not valid JSON",
                error_class=ErrorClass.SCHEMA_INVALID,
                raw_text=content,
            ) from exc
        return {"payload": payload, "raw_text": content}

    def submit(
        self,
        prompt: str,
        output_schema: Dict[str, Any],
        *,
        credential: ResolvedCredential,
        temperature: float,
        system_prompt: Optional[str] = None,
        schema_name: str = "scene_script_v1",
    ) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": system_prompt or SCRIPT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        return self._call(
            messages,
            output_schema,
            credential=credential,
            temperature=temperature,
            schema_name=schema_name,
        )

    def repair(
        self,
        raw_text: str,
        output_schema: Dict[str, Any],
        *,
        credential: ResolvedCredential,
        temperature: float = 0.1,
    ) -> Dict[str, Any]:
        if not str(raw_text or "").strip():
            raise GenerationError("No content to repair", error_class=ErrorClass.SCHEMA_INVALID)
        messages = [
            {"role": "system", "content": REPAIR_SYSTEM_PROMPT},
            {"role": "user", "content": f"Repair this JSON:\n\n{raw_text}"},
        ]
        logger.info("submitting repair pass (%s chars)", len(raw_text))
        return self._call(
            messages,
            output_schema,
            credential=credential,
            temperature=temperature,
            schema_name="scene_script_v1_repaired",
        )
