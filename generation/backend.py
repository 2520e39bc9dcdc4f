"""
Generation backend: musical feature analysis and the four-stage chain.

The chain runs analyst -> composer -> specialist -> director. Each stage takes
the context built so far and returns one structured result; when the model
call fails or returns something malformed, that stage substitutes its fixed
fallback value and the chain carries on. A description is never abandoned
because one stage degraded.

The resulting production description records which stages fell back, and
its `source` is "fallback" whenever at least one did.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from logging_setup import get_logger, Component as LogComponent

from .clients import Transcript
from .templates import get_template, render


logger = get_logger(LogComponent.GENERATION_BACKEND)


class JSONModel(Protocol):
    async def complete_json(self, system: Optional[str], prompt: str, temperature: float = 0.7) -> Dict[str, Any]:
        ...


DEFAULT_FEATURES: Dict[str, Any] = {
    "tempo": 120,
    "key": "C",
    "mood": ["neutral"],
    "genres": ["pop"],
    "structure": "verse-chorus",
    "energy": 5,
    "confidence": 0.3,
}

DEFAULT_CHORDS: Dict[str, Any] = {
    "primaryProgression": ["C", "Am", "F", "G"],
    "chordNotes": {
        "C": ["C4", "E4", "G4"],
        "Am": ["A3", "C4", "E4"],
        "F": ["F3", "A3", "C4"],
        "G": ["G3", "B3", "D4"],
    },
    "timing": "whole notes",
}

DEFAULT_INSTRUMENTATION: Dict[str, str] = {
    "drums": "acoustic drum kit",
    "bass": "electric bass",
    "chords": "piano",
    "melody": "synth lead",
}

DEFAULT_MIX_LEVELS: Dict[str, float] = {"drums": 0.8, "bass": 0.7, "chords": 0.6, "melody": 0.9}

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "fallback"


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _primary_genre(features: Dict[str, Any]) -> str:
    genres = features.get("genres") or []
    return genres[0] if genres else "pop"


class FeatureAnalyzer:
    """Estimates tempo, key, mood and genre from a transcript, degrading to defaults."""

    def __init__(self, model: Optional[JSONModel], call_timeout: Optional[float] = None):
        self.model = model
        self.call_timeout = call_timeout

    async def analyze(self, transcript: Transcript) -> Tuple[Dict[str, Any], bool]:
        """Returns (features, degraded)."""
        if self.model is None:
            return _copy(DEFAULT_FEATURES), True

        template = get_template("analyze")
        try:
            prompt = render(
                template["prompt"],
                text=transcript.text,
                duration=transcript.duration,
                segments=len(transcript.segments),
            )
            features = await asyncio.wait_for(
                self.model.complete_json(template.get("system"), prompt, template.get("temperature", 0.3)),
                timeout=self.call_timeout,
            )
        except Exception as e:
            logger.warning("Musical analysis failed, using defaults", error=str(e), error_type=type(e).__name__)
            return _copy(DEFAULT_FEATURES), True

        if not _valid_features(features):
            logger.warning("Musical analysis malformed, using defaults")
            return _copy(DEFAULT_FEATURES), True

        merged = _copy(DEFAULT_FEATURES)
        merged.update(features)
        return merged, False


def _valid_features(features: Any) -> bool:
    if not isinstance(features, dict):
        return False
    tempo = features.get("tempo")
    return isinstance(tempo, (int, float)) and tempo > 0 and isinstance(features.get("key"), str)


@dataclass(frozen=True)
class ChainStage:
    """One pure stage: context in, structured result out, with a fixed fallback."""

    name: str
    output_key: str
    required: Tuple[str, ...]
    prompt_params: Callable[[Dict[str, Any]], Dict[str, Any]]
    fallback: Callable[[Dict[str, Any]], Dict[str, Any]]

    def is_valid(self, result: Any) -> bool:
        return isinstance(result, dict) and all(result.get(key) for key in self.required)


def _analyst_fallback(ctx: Dict[str, Any]) -> Dict[str, Any]:
    result = _copy(ctx["features"])
    result.update({
        "scale": "major",
        "rhythmicPattern": "steady four-four",
        "melodicHints": "vocal melody detected",
        "confidence": 0.6,
    })
    return result


def _specialist_fallback(ctx: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "primaryGenre": _primary_genre(ctx["analysis"]),
        "instrumentation": dict(DEFAULT_INSTRUMENTATION),
        "rhythmPattern": "steady four-four",
    }


def _director_fallback(ctx: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "finalInstrumentation": {
            "drums": "acoustic kit",
            "bass": "electric bass",
            "chords": "piano",
            "melody": "synth lead",
        },
        "mixLevels": dict(DEFAULT_MIX_LEVELS),
    }


CHAIN: List[ChainStage] = [
    ChainStage(
        name="analyst",
        output_key="analysis",
        required=("tempo", "key"),
        prompt_params=lambda ctx: {
            "analysis": _dump(ctx["features"]),
            "text": ctx["transcript"].text,
            "duration": ctx["transcript"].duration,
            "confidence": ctx["transcript"].confidence,
        },
        fallback=_analyst_fallback,
    ),
    ChainStage(
        name="composer",
        output_key="chords",
        required=("primaryProgression",),
        prompt_params=lambda ctx: {"analysis": _dump(ctx["analysis"])},
        fallback=lambda ctx: _copy(DEFAULT_CHORDS),
    ),
    ChainStage(
        name="specialist",
        output_key="genre",
        required=("instrumentation",),
        prompt_params=lambda ctx: {
            "genre": _primary_genre(ctx["analysis"]),
            "chords": _dump(ctx["chords"]),
            "analysis": _dump(ctx["analysis"]),
        },
        fallback=_specialist_fallback,
    ),
    ChainStage(
        name="director",
        output_key="arrangement",
        required=("mixLevels",),
        prompt_params=lambda ctx: {"genre": _dump(ctx["genre"]), "analysis": _dump(ctx["analysis"])},
        fallback=_director_fallback,
    ),
]


class GenerationBackend:
    """Runs the four-stage chain against one JSON-mode chat model.

    Every model call gets its own `stage_timeout`; a call that overruns it is
    treated like any other stage failure and falls back.
    """

    def __init__(
        self,
        model: Optional[JSONModel],
        stages: Optional[List[ChainStage]] = None,
        stage_timeout: Optional[float] = None,
    ):
        self.model = model
        self.stages = stages or CHAIN
        self.stage_timeout = stage_timeout

    async def _run_stage(self, stage: ChainStage, ctx: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        if self.model is None:
            return stage.fallback(ctx), True

        template = get_template(stage.name)
        try:
            prompt = render(template["prompt"], **stage.prompt_params(ctx))
            result = await asyncio.wait_for(
                self.model.complete_json(template.get("system"), prompt, template.get("temperature", 0.7)),
                timeout=self.stage_timeout,
            )
        except Exception as e:
            logger.warning(
                "Stage failed, using fallback",
                stage=stage.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return stage.fallback(ctx), True

        if not stage.is_valid(result):
            logger.warning("Stage output malformed, using fallback", stage=stage.name)
            return stage.fallback(ctx), True

        logger.info("Stage completed", stage=stage.name)
        return result, False

    async def generate(self, features: Dict[str, Any], transcript: Transcript) -> Dict[str, Any]:
        """Build a production description. Never raises for a model failure."""
        ctx: Dict[str, Any] = {"features": features, "transcript": transcript}
        degraded: List[str] = []

        for stage in self.stages:
            result, fell_back = await self._run_stage(stage, ctx)
            ctx[stage.output_key] = result
            if fell_back:
                degraded.append(stage.name)

        description = {stage.output_key: ctx[stage.output_key] for stage in self.stages}
        description.update({
            "lyrics": transcript.text,
            "source": SOURCE_FALLBACK if degraded else SOURCE_MODEL,
            "degradedStages": degraded,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        })
        logger.info("Production description ready", source=description["source"], degraded=degraded)
        return description
