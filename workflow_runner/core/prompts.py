"""Prompt template rendering and model output parsing."""

import json
import re
from typing import Any, Dict, List, Optional

from .exceptions import PathSyntaxError
from .logging import get_logger
from .paths import lookup_path

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_FENCE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?|\n?```\s*$")

JSON_INSTRUCTION = "Respond only with a valid JSON object. Do not include any other text."


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_template(template: Optional[str], variables: Dict[str, Any]) -> str:
    """Replace ``{{ path }}`` placeholders with values looked up in ``variables``.

    Placeholders that do not resolve, or are not valid paths, are left as written.
    """
    if not template:
        return ""

    def replace(match: re.Match) -> str:
        expression = match.group(1)
        try:
            found, value = lookup_path(variables, expression)
        except PathSyntaxError:
            return match.group(0)
        if not found:
            logger.debug(f"Template placeholder not resolved: {expression}")
            return match.group(0)
        return _format_value(value)

    return _PLACEHOLDER.sub(replace, template)


def build_template_variables(context: Dict[str, Any], resolved_input: Any) -> Dict[str, Any]:
    """Variables visible to templates: the run context, ``input``, and the input's own keys."""
    variables = dict(context or {})
    variables["input"] = resolved_input
    if isinstance(resolved_input, dict):
        variables.update(resolved_input)
    return variables


def create_messages(
    system_prompt: Optional[str],
    user_prompt: Optional[str],
    json_output: bool = False
) -> List[Dict[str, str]]:
    """Assemble chat messages, skipping empty prompts."""
    messages = []
    system = (system_prompt or "").strip()
    if json_output:
        system = f"{system}\n\n{JSON_INSTRUCTION}".strip()
    if system:
        messages.append({"role": "system", "content": system})
    if user_prompt and user_prompt.strip():
        messages.append({"role": "user", "content": user_prompt.strip()})
    return messages


def strip_code_fences(text: str) -> str:
    return _FENCE.sub("", text.strip()).strip()


def parse_json_output(text: str) -> Any:
    """
    Parse model output as JSON.

    Code fences are stripped and, failing a direct parse, the outermost
    ``{...}`` object is extracted. Unparseable output is returned as
    ``{"raw": text, "parse_error": message}``.
    """
    cleaned = strip_code_fences(text or "")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        first_error = str(e)

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            first_error = str(e)

    logger.warning(f"Model output is not valid JSON: {first_error}")
    return {"raw": text, "parse_error": first_error}
