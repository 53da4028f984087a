"""Style catalogue and prompt construction for staging jobs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
import hashlib
from pathlib import Path
from typing import Dict

import yaml

from src.core.config import get_settings


class PromptTemplate(str, Enum):
    FURNISH = "furnish"
    DECLUTTER = "declutter"
    RENOVATION = "renovation"


_TEMPLATES: Dict[PromptTemplate, str] = {
    PromptTemplate.FURNISH: (
        "Transform this empty room into a beautifully furnished and staged space with {description}. "
        "Keep the same room layout, walls, windows and floors. Add furniture, decor, and lighting."
    ),
    PromptTemplate.DECLUTTER: (
        "{description}. Remove all furniture, clutter and personal items. "
        "Keep the exact same room structure, walls, floors, windows and doors."
    ),
    PromptTemplate.RENOVATION: (
        "{description}. Keep the same room dimensions and structure but update all surfaces, "
        "finishes and fixtures to look freshly renovated."
    ),
}


@dataclass(frozen=True)
class StyleDefinition:
    name: str
    description: str
    template: PromptTemplate


def _resolve_styles_path() -> Path:
    settings = get_settings()
    configured = Path(settings.styles_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_styles() -> Dict[str, StyleDefinition]:
    styles_path = _resolve_styles_path()
    with styles_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid styles file format")

    styles: Dict[str, StyleDefinition] = {}
    for name, definition in content.items():
        if not isinstance(name, str) or not isinstance(definition, dict):
            continue
        description = str(definition.get("description") or "").strip()
        if not description:
            raise ValueError(f"Style '{name}' is missing a description")
        try:
            template = PromptTemplate(str(definition.get("template") or PromptTemplate.FURNISH.value))
        except ValueError as exc:
            raise ValueError(f"Style '{name}' references an unknown template") from exc
        styles[name] = StyleDefinition(name=name, description=description, template=template)
    return styles


def reset_styles_cache() -> None:
    load_styles.cache_clear()


def is_known_style(style: str) -> bool:
    return style in load_styles()


def get_style(style: str) -> StyleDefinition:
    styles = load_styles()
    if style not in styles:
        raise KeyError(style)
    return styles[style]


def build_prompt(style: str) -> str:
    """Return the generation prompt for a style; deterministic for a given catalogue."""

    definition = get_style(style)
    return _TEMPLATES[definition.template].format(description=definition.description)


def options_fingerprint(style: str) -> str:
    return hashlib.md5(style.encode("utf-8")).hexdigest()
