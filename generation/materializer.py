"""
File materializer.

Turns a production description into the downloadable file set for a session:
the arrangement blueprint, the lyrics sheet and a zip package bundling both.
Audio rendering is done elsewhere; this only lays out what a DAW user needs.
"""
import asyncio
import json
import zipfile
from pathlib import Path
from typing import Any, Dict

from logging_setup import get_logger, Component as LogComponent


logger = get_logger(LogComponent.PIPELINE)


class FileMaterializer:
    def __init__(self, generated_dir: str):
        self.generated_dir = Path(generated_dir)

    async def materialize(self, session_id: str, description: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._write, session_id, description)

    def _write(self, session_id: str, description: Dict[str, Any]) -> Dict[str, Any]:
        out_dir = self.generated_dir / session_id
        out_dir.mkdir(parents=True, exist_ok=True)

        arrangement_path = out_dir / "arrangement.json"
        arrangement_path.write_text(json.dumps(description, indent=2, default=str), encoding="utf-8")

        lyrics_path = out_dir / "lyrics.txt"
        lyrics_path.write_text(_lyrics_sheet(description), encoding="utf-8")

        package_path = out_dir / "package.zip"
        with zipfile.ZipFile(package_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.write(arrangement_path, arcname="arrangement.json")
            zf.write(lyrics_path, arcname="lyrics.txt")

        files = {
            "arrangement": f"{session_id}/arrangement.json",
            "lyrics": f"{session_id}/lyrics.txt",
            "downloadPackage": f"{session_id}/package.zip",
        }
        files["totalSize"] = sum((self.generated_dir / rel).stat().st_size for rel in files.values())
        logger.info("Files materialized", session_id=session_id, total_size=files["totalSize"])
        return files


def _lyrics_sheet(description: Dict[str, Any]) -> str:
    analysis = description.get("analysis") or {}
    chords = (description.get("chords") or {}).get("primaryProgression") or []
    lines = [
        f"Tempo: {analysis.get('tempo', '?')} BPM",
        f"Key: {analysis.get('key', '?')}",
        f"Chords: {' - '.join(chords)}",
        "",
        (description.get("lyrics") or "").strip(),
    ]
    return "\n".join(lines) + "\n"
