from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from .errors import ErrorClass, GenerationError, truncate_error

SCENE_ROLES = ["hook", "context", "main_point", "evidence", "timeline", "analysis", "summary", "cta"]

MAX_SCHEMA_ERRORS = 10

SCENE_SCRIPT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "version": {"type": "string", "enum": ["1.0"]},
        "metadata": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "minLength": 1, "maxLength": 100},
                "total_scenes": {"type": "integer", "minimum": 3, "maximum": 50},
                "estimated_duration_seconds": {"type": "integer", "minimum": 30},
            },
            "required": ["title", "total_scenes", "estimated_duration_seconds"],
            "additionalProperties": False,
        },
        "scenes": {
            "type": "array",
            "minItems": 3,
            "maxItems": 50,
            "items": {
                "type": "object",
                "properties": {
                    "idx": {"type": "integer", "minimum": 1},
                    "role": {"type": "string", "enum": SCENE_ROLES},
                    "title": {"type": "string", "minLength": 1, "maxLength": 50},
                    "dialogue": {"type": "string", "minLength": 60, "maxLength": 140},
                    "bullets": {
                        "type": "array",
                        "minItems": 2,
                        "maxItems": 3,
                        "items": {"type": "string", "minLength": 8, "maxLength": 24},
                    },
                    "image_prompt": {"type": "string", "minLength": 30, "maxLength": 400},
                },
                "required": ["idx", "role", "title", "dialogue", "bullets", "image_prompt"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["version", "metadata", "scenes"],
    "additionalProperties": False,
}

_SCRIPT_VALIDATOR = Draft202012Validator(SCENE_SCRIPT_SCHEMA)


def schema_errors(payload: Any, schema: Dict[str, Any] = SCENE_SCRIPT_SCHEMA) -> List[str]:
    validator = _SCRIPT_VALIDATOR if schema is SCENE_SCRIPT_SCHEMA else Draft202012Validator(schema)
    errors: List[str] = []
    for error in sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path]):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
        if len(errors) >= MAX_SCHEMA_ERRORS:
            break
    return errors


def validate_script(payload: Any, raw_text: str = "") -> Dict[str, Any]:
    errors = schema_errors(payload)
    if errors:
        raise GenerationError(
            truncate_error("Scene script failed validation: " + "; ".join(errors)),
            error_class=ErrorClass.SCHEMA_INVALID,
            raw_text=raw_text,
        )
    return payload
