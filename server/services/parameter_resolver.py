"""Parameter Resolver - Template variable resolution.

Resolves {{path}} template variables in node parameters against the
execution context, with the lead snapshot visible as ``lead``.
"""

import re
from typing import Dict, Any

from core.logging import get_logger
from services.execution.conditions import get_nested_value

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{\s*([^}]+?)\s*\}\}')


class ParameterResolver:
    """Resolves template variables in node parameters."""

    def resolve(self, parameters: Dict[str, Any], scope: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve all template variables in parameters recursively."""
        template_params = [k for k, v in parameters.items() if isinstance(v, str) and '{{' in v]
        if template_params:
            logger.debug("Resolving templates", params=template_params)

        return {k: self.resolve_value(v, scope) for k, v in parameters.items()}

    def resolve_value(self, value: Any, scope: Dict[str, Any]) -> Any:
        if isinstance(value, str) and '{{' in value:
            return self._resolve_string(value, scope)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, scope) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, scope) for item in value]
        return value

    def render(self, text: str, scope: Dict[str, Any]) -> str:
        """Render a template into a string (used for message bodies and urls)."""
        if not text or '{{' not in text:
            return text
        resolved = self._resolve_string(text, scope)
        return resolved if isinstance(resolved, str) else str(resolved)

    def _resolve_string(self, value: str, scope: Dict[str, Any]) -> Any:
        """Resolve templates in a string value."""
        result = value

        for match in TEMPLATE_PATTERN.finditer(value):
            full_match = match.group(0)
            path = match.group(1)
            resolved_value = get_nested_value(scope, path)

            if resolved_value is not None:
                # If entire value is just the template, preserve type
                if value.strip() == full_match:
                    return resolved_value
                result = result.replace(full_match, str(resolved_value))
            else:
                logger.debug("Unresolved template variable", variable=path)
                result = result.replace(full_match, '')

        return result


# Stateless, shared by all handlers
resolver = ParameterResolver()
