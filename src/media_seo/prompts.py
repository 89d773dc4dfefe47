"""Prompt templates for metadata generation.

Templates use ``{{name}}`` placeholders and ``{{#if name}}...{{/if}}``
blocks that are dropped when ``name`` is missing or empty.
"""

import re
from typing import Any, Dict, Optional

LANGUAGE_NAMES = {
    "en": "ENGLISH",
    "cs": "CZECH",
    "de": "GERMAN",
    "fr": "FRENCH",
    "es": "SPANISH",
    "it": "ITALIAN",
    "pt": "PORTUGUESE",
    "pl": "POLISH",
    "ru": "RUSSIAN",
    "nl": "DUTCH",
    "sv": "SWEDISH",
    "da": "DANISH",
    "fi": "FINNISH",
    "no": "NORWEGIAN",
}

RESPONSE_FORMAT = '{"alt":"...","caption":"...","title":"...","keywords":["..."],"score":0.95}'

MINIMAL_TEMPLATE = (
    "You are a {{ai_role}} writing image metadata for a website.\n\n"
    "CONTEXT:\n"
    "{{#if site_context}}Site: {{site_context}}\n{{/if}}"
    "{{#if post_title}}Page: {{post_title}}\n{{/if}}"
    "{{#if categories}}Categories: {{categories}}\n{{/if}}"
    "{{#if tags}}Tags: {{tags}}\n{{/if}}"
    "\nIMAGE:\n"
    "{{#if filename_hint}}File: {{filename_hint}}\n{{/if}}"
    "{{#if orientation}}Format: {{orientation}}\n{{/if}}"
    "\nWrite everything in {{language_name}}.\n\n"
    "1. ALT text, at most {{alt_max_length}} characters\n"
    "2. Caption, 1-2 sentences\n"
    "3. Title, 3-6 words\n"
    "4. Keywords, 3-6 terms\n\n"
    "Respond ONLY with JSON:\n" + RESPONSE_FORMAT
)

STANDARD_TEMPLATE = (
    "You are a {{ai_role}} analyzing images for a website.\n\n"
    "WEBSITE CONTEXT:\n"
    "{{#if site_context}}Site: {{site_context}}\n{{/if}}"
    "{{#if site_topic}}Topic: {{site_topic}}\n{{/if}}"
    "{{#if post_title}}Page title: {{post_title}}\n{{/if}}"
    "{{#if post_excerpt}}Page description: {{post_excerpt}}\n{{/if}}"
    "{{#if categories}}Categories: {{categories}}\n{{/if}}"
    "{{#if tags}}Tags: {{tags}}\n{{/if}}"
    "\nIMAGE INFORMATION:\n"
    "{{#if filename_hint}}Filename: {{filename_hint}}\n{{/if}}"
    "{{#if orientation}}Format: {{orientation}}\n{{/if}}"
    "{{#if dimensions}}Dimensions: {{dimensions}}\n{{/if}}"
    '{{#if current_alt}}Current ALT: "{{current_alt}}" (improve it rather than replace it)\n{{/if}}'
    "{{#if attachment_title}}Original title: {{attachment_title}}\n{{/if}}"
    "{{#if attachment_caption}}Author caption: {{attachment_caption}}\n{{/if}}"
    "\nOUTPUT LANGUAGE: {{language_name}}\n"
    "{{#if is_multilingual}}This site is multilingual. The context may mix languages, "
    "but every field you write must be in {{language_name}} only.\n{{/if}}"
    "\nTASK:\n"
    "1. ALT text: at most {{alt_max_length}} characters, descriptive, "
    "never starting with 'image of'\n"
    "2. Caption: 1-2 sentences tied to the page context\n"
    "3. Title: 3-6 factual, keyword-rich words\n"
    "4. Keywords: 3-6 terms aligned with the page categories and tags\n\n"
    "Prefer page context over technical image details and be specific.\n\n"
    "Respond ONLY with valid JSON in this exact format:\n" + RESPONSE_FORMAT
)

ADVANCED_TEMPLATE = (
    "You are a {{ai_role}} producing accessible, search-optimized image metadata.\n\n"
    "WEBSITE CONTEXT:\n"
    "{{#if site_context}}Site: {{site_context}}\n{{/if}}"
    "{{#if site_topic}}Topic: {{site_topic}}\n{{/if}}"
    "{{#if post_title}}Page title: {{post_title}}\n{{/if}}"
    "{{#if post_excerpt}}Page description: {{post_excerpt}}\n{{/if}}"
    "{{#if categories}}Categories: {{categories}}\n{{/if}}"
    "{{#if tags}}Tags: {{tags}}\n{{/if}}"
    "\nIMAGE INFORMATION:\n"
    "{{#if filename_hint}}Filename: {{filename_hint}}\n{{/if}}"
    "{{#if orientation}}Format: {{orientation}}\n{{/if}}"
    "{{#if dimensions}}Dimensions: {{dimensions}}\n{{/if}}"
    '{{#if current_alt}}Current ALT: "{{current_alt}}"\n{{/if}}'
    "{{#if attachment_title}}Original title: {{attachment_title}}\n{{/if}}"
    "{{#if attachment_caption}}Author caption: {{attachment_caption}}\n{{/if}}"
    "{{#if attachment_description}}Author description: {{attachment_description}}\n{{/if}}"
    "{{#if exif_title}}EXIF title: {{exif_title}}\n{{/if}}"
    "{{#if exif_caption}}EXIF caption: {{exif_caption}}\n{{/if}}"
    "{{#if location}}Location: {{location}}\n{{/if}}"
    "{{#if photo_date}}Taken: {{photo_date}}\n{{/if}}"
    "\nOUTPUT LANGUAGE: {{language_name}}\n"
    "{{#if is_multilingual}}This site is multilingual. Do not copy context text written in "
    "another language; write every field in {{language_name}} only.\n{{/if}}"
    "\nFIRST describe to yourself what is visibly in the image: subject, setting, action, "
    "notable details. THEN connect it to the page context.\n\n"
    "FIELDS:\n"
    "- alt: at most {{alt_max_length}} characters, at least 3 words, describes the content "
    "for screen reader users, no phrases like 'image of' or 'photo of'\n"
    "- caption: 5-30 words, engaging, relates the image to the page\n"
    "- title: 3-6 words, factual and keyword-rich\n"
    "- keywords: 3-6 unique terms reflecting search intent\n"
    "- score: your confidence from 0 to 1 that the metadata is accurate\n\n"
    "Respond ONLY with valid JSON in this exact format:\n" + RESPONSE_FORMAT
)

DEFAULT_TEMPLATES = {
    "minimal": MINIMAL_TEMPLATE,
    "standard": STANDARD_TEMPLATE,
    "advanced": ADVANCED_TEMPLATE,
}

_CONDITIONAL = re.compile(r"\{\{#if\s+(\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code.upper())


def _format_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def render(template: str, data: Dict[str, Any]) -> str:
    """Apply conditionals, then substitute placeholders.

    Unknown placeholders are left in place.
    """

    def conditional(match):
        return match.group(2) if data.get(match.group(1)) else ""

    template = _CONDITIONAL.sub(conditional, template)

    def placeholder(match):
        key = match.group(1)
        if key not in data:
            return match.group(0)
        formatted = _format_value(data[key])
        return match.group(0) if formatted is None else formatted

    return _PLACEHOLDER.sub(placeholder, template)


class PromptBuilder:
    """Builds the prompt for one subject from a template tier."""

    def __init__(
        self,
        variant: str = "standard",
        ai_role: str = "SEO expert",
        site_context: str = "",
        alt_max_length: int = 125,
        templates: Optional[Dict[str, str]] = None,
        is_multilingual: bool = False,
    ):
        if variant not in DEFAULT_TEMPLATES:
            raise ValueError(f"Unknown prompt variant: {variant}")
        self.variant = variant
        self.ai_role = ai_role
        self.site_context = site_context
        self.alt_max_length = alt_max_length
        self.templates = {**DEFAULT_TEMPLATES, **(templates or {})}
        self.is_multilingual = is_multilingual

    @property
    def version(self) -> str:
        custom = self.templates[self.variant] is not DEFAULT_TEMPLATES[self.variant]
        return f"{self.variant}-custom" if custom else self.variant

    def prepare_data(self, language: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "ai_role": self.ai_role,
            "site_context": self.site_context,
            "alt_max_length": self.alt_max_length,
            "language": language,
            "language_name": language_name(language),
            "is_multilingual": self.is_multilingual,
            **context,
        }

    def build(self, language: str, context: Dict[str, Any]) -> str:
        return render(self.templates[self.variant], self.prepare_data(language, context))
