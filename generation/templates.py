"""
Prompt and SMS templates.

Templates live in templates.yaml next to this module and use string.Template
($name) placeholders. A missing file or missing key falls back to the short
hardcoded templates below, so generation never stops for lack of a prompt.
"""
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional

import yaml


_FALLBACK: Dict[str, Dict[str, Any]] = {
    "analyze": {"temperature": 0.3, "prompt": 'Estimate tempo, key, mood, genres, structure and energy for: "$text". JSON only.'},
    "analyst": {"temperature": 0.7, "prompt": "Enhance this musical analysis as JSON: $analysis"},
    "composer": {"temperature": 0.6, "prompt": "Write a chord progression as JSON for: $analysis"},
    "specialist": {"temperature": 0.7, "prompt": "Adapt these chords to $genre as JSON: $chords"},
    "director": {"temperature": 0.5, "prompt": "Finalize the arrangement as JSON for: $genre"},
    "sms": {
        "download_links": "Hum It Out: your track is ready! Download it here: $download_url",
        "apology": "Hum It Out: Sorry, we encountered an issue processing your recording. Please try again later.",
    },
}


def _templates_path() -> Path:
    return Path(__file__).parent / "templates.yaml"


def load_templates(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    templates = {name: dict(section) for name, section in _FALLBACK.items()}
    path = path or _templates_path()
    if not path.exists():
        return templates

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Template file {path} must contain a mapping at top-level")

    for name, section in data.items():
        if isinstance(section, dict):
            templates.setdefault(name, {}).update(section)
    return templates


_templates: Optional[Dict[str, Dict[str, Any]]] = None


def get_template(section: str) -> Dict[str, Any]:
    global _templates
    if _templates is None:
        _templates = load_templates()
    return _templates.get(section, {})


def render(template: str, /, **params: Any) -> str:
    """Substitute $placeholders; unknown placeholders are left as-is."""
    return Template(template).safe_substitute(**params).strip()


def sms_text(key: str, **params: Any) -> str:
    return render(get_template("sms")[key], **params)
