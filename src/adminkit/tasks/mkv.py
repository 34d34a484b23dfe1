"""
Matroska track filtering.

Reads the track list with `mkvmerge -J`, decides which audio and subtitle
tracks to keep and remuxes the file without the rest. Nothing is
re-encoded.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import get_logger
from adminkit.core.models import MkvTrack, RemovedTrack, TrackPlan, TrackPolicy, TrackType
from adminkit.core.safety import OperationType, PreflightChecker, check_free_space, check_tool_available
from adminkit.platform.base import CommandError, CommandRunner

logger = get_logger(__name__)

MKVMERGE = "mkvmerge"

# ISO 639-1 codes and 639-2/T variants mapped to the 639-2/B codes mkvmerge reports.
LANGUAGE_ALIASES = {
    "en": "eng",
    "de": "ger",
    "deu": "ger",
    "fr": "fre",
    "fra": "fre",
    "es": "spa",
    "it": "ita",
    "ja": "jpn",
    "nl": "dut",
    "nld": "dut",
    "pt": "por",
    "ru": "rus",
    "zh": "chi",
    "zho": "chi",
}


def normalize_language(code: str | None) -> str:
    if not code:
        return "und"
    primary = code.strip().lower().split("-")[0]
    return LANGUAGE_ALIASES.get(primary, primary) or "und"


def parse_identification(data: dict[str, Any]) -> list[MkvTrack]:
    """Build tracks from mkvmerge's JSON identification output."""
    tracks: list[MkvTrack] = []
    for raw in data.get("tracks", []):
        try:
            track_type = TrackType(raw.get("type"))
        except ValueError:
            # buttons and other exotic types are left untouched
            continue

        props = raw.get("properties", {})
        tracks.append(
            MkvTrack(
                id=int(raw["id"]),
                type=track_type,
                codec=raw.get("codec", ""),
                language=normalize_language(props.get("language") or props.get("language_ietf")),
                name=props.get("track_name", ""),
                default=bool(props.get("default_track", False)),
                forced=bool(props.get("forced_track", False)),
                channels=props.get("audio_channels"),
                sampling_frequency=props.get("audio_sampling_frequency"),
                pixel_dimensions=props.get("pixel_dimensions"),
            )
        )
    return tracks


def dedupe_tracks(tracks: list[MkvTrack]) -> tuple[list[MkvTrack], list[RemovedTrack]]:
    """Keep the first track of every group of field-for-field equal tracks."""
    kept: list[MkvTrack] = []
    removed: list[RemovedTrack] = []
    for track in tracks:
        original = next((k for k in kept if track.is_duplicate_of(k)), None)
        if original is None:
            kept.append(track)
        else:
            removed.append(RemovedTrack(track, f"duplicate of #{original.id}"))
    return kept, removed


def _filter_type(
    tracks: list[MkvTrack],
    languages: list[str],
    policy: TrackPolicy,
    keep_forced: bool,
) -> tuple[list[MkvTrack], list[RemovedTrack]]:
    wanted = {normalize_language(lang) for lang in languages}
    kept: list[MkvTrack] = []
    removed: list[RemovedTrack] = []

    for track in tracks:
        if policy.drop_commentary and track.is_commentary:
            removed.append(RemovedTrack(track, "commentary"))
        elif wanted and track.language not in wanted and not (keep_forced and track.forced):
            removed.append(RemovedTrack(track, f"language {track.language} not wanted"))
        else:
            kept.append(track)

    if policy.drop_duplicates:
        kept, duplicates = dedupe_tracks(kept)
        removed.extend(duplicates)
    return kept, removed


def select_tracks(tracks: list[MkvTrack], policy: TrackPolicy) -> TrackPlan:
    """Apply a policy to a file's tracks."""
    plan = TrackPlan(tracks=tracks)
    by_type = {t: [tr for tr in tracks if tr.type == t] for t in TrackType}

    plan.keep[TrackType.VIDEO] = [t.id for t in by_type[TrackType.VIDEO]]

    audio = by_type[TrackType.AUDIO]
    kept_audio, removed_audio = _filter_type(audio, policy.audio_languages, policy, keep_forced=False)
    if audio and not kept_audio:
        plan.warnings.append("Policy would remove every audio track; keeping all audio")
        kept_audio, removed_audio = audio, []
    plan.keep[TrackType.AUDIO] = [t.id for t in kept_audio]
    plan.removed.extend(removed_audio)

    kept_subs, removed_subs = _filter_type(
        by_type[TrackType.SUBTITLES],
        policy.subtitle_languages,
        policy,
        keep_forced=policy.keep_forced_subtitles,
    )
    plan.keep[TrackType.SUBTITLES] = [t.id for t in kept_subs]
    plan.removed.extend(removed_subs)

    plan.removed.sort(key=lambda r: r.track.id)
    return plan


def _selector_args(plan: TrackPlan, track_type: TrackType, option: str, none_option: str) -> list[str]:
    removed_any = any(r.track.type == track_type for r in plan.removed)
    if not removed_any:
        return []
    ids = plan.kept_ids(track_type)
    if not ids:
        return [none_option]
    return [option, ",".join(str(i) for i in ids)]


def build_mkvmerge_args(
    executable: str,
    source: Path,
    output: Path,
    plan: TrackPlan,
) -> list[str]:
    """Build the mkvmerge command that copies only the kept tracks."""
    args = [executable, "-o", str(output)]
    args += _selector_args(plan, TrackType.AUDIO, "--audio-tracks", "--no-audio")
    args += _selector_args(plan, TrackType.SUBTITLES, "--subtitle-tracks", "--no-subtitles")

    kept_audio = [t for t in plan.tracks if t.id in plan.kept_ids(TrackType.AUDIO)]
    if kept_audio and not any(t.default for t in kept_audio):
        args += ["--default-track-flag", f"{kept_audio[0].id}:1"]

    args.append(str(source))
    return args


def output_path_for(source: Path, output_dir: Path | None, suffix: str) -> Path:
    directory = output_dir or source.parent
    return directory / f"{source.stem}{suffix}.mkv"


def collect_sources(path: Path, recursive: bool = False, output_suffix: str = "") -> list[Path]:
    """
    A file given directly is always returned. Inside a directory, files
    whose stem ends with output_suffix are earlier outputs and are skipped.
    """
    if path.is_file():
        return [path]
    pattern = "**/*.mkv" if recursive else "*.mkv"
    return sorted(
        p for p in path.glob(pattern)
        if p.is_file() and not (output_suffix and p.stem.endswith(output_suffix))
    )


class MkvToolkit:
    """Wraps mkvmerge identification and remuxing."""

    def __init__(self, runner: CommandRunner, executable: str = MKVMERGE, timeout: int = 3600) -> None:
        self.runner = runner
        self.executable = executable
        self.timeout = timeout

    def identify(self, path: Path) -> list[MkvTrack]:
        result = self.runner.run([self.executable, "-J", str(path)], timeout=120)
        if not result.success:
            raise CommandError(f"mkvmerge could not identify {path}", result)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ValueError(f"Unexpected mkvmerge output for {path}: {e}") from e
        if not data.get("container", {}).get("recognized", True):
            raise ValueError(f"{path} is not a recognized container")
        return parse_identification(data)

    def remux(
        self,
        source: Path,
        output: Path,
        plan: TrackPlan,
        dry_run: bool = False,
    ) -> tuple[bool, str]:
        """
        Write output containing only the kept tracks.
        mkvmerge exits 1 for warnings (output usable) and 2 for errors.
        """
        if not plan.changes_anything:
            return True, f"{source.name}: nothing to remove"

        args = build_mkvmerge_args(self.executable, source, output, plan)
        if dry_run:
            logger.info("Dry run: would remux", command=args)
            return True, f"{source.name}: would drop {len(plan.removed)} track(s)"

        result = self.runner.run(args, timeout=self.timeout, check=False)
        if result.returncode == 0:
            return True, f"{source.name}: dropped {len(plan.removed)} track(s)"
        if result.returncode == 1:
            warnings = [
                line for line in result.stdout.splitlines() if line.startswith("Warning:")
            ]
            logger.warning("mkvmerge reported warnings", source=str(source), warnings=warnings)
            return True, f"{source.name}: dropped {len(plan.removed)} track(s) with warnings"

        if output.exists():
            output.unlink()
        return False, f"{source.name}: mkvmerge failed: {result.error_text()}"


@dataclass
class RemuxOutcome:
    source: Path
    output: Path | None
    success: bool
    message: str
    plan: TrackPlan | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": str(self.source),
            "output": str(self.output) if self.output else None,
            "success": self.success,
            "message": self.message,
            "plan": self.plan.to_dict() if self.plan else None,
        }


class RemuxJob(Job[list[RemuxOutcome]]):
    """Filter tracks of one or more mkv files."""

    operation_type = OperationType.MODIFY

    def __init__(
        self,
        toolkit: MkvToolkit,
        sources: list[Path],
        policy: TrackPolicy,
        output_dir: Path | None = None,
        suffix: str = ".filtered",
        dry_run: bool = False,
        preflight: bool = True,
    ) -> None:
        super().__init__(name="remux_mkv", description=f"Filter tracks in {len(sources)} file(s)")
        self.toolkit = toolkit
        self.sources = sources
        self.policy = policy
        self.output_dir = output_dir
        self.suffix = suffix
        self.dry_run = dry_run
        self.preflight = preflight
        self.checker = PreflightChecker()
        self.checker.add_check("Free Space", check_free_space)
        self.tool_checker = PreflightChecker()
        self.tool_checker.add_check("Tool Available", check_tool_available)

    @property
    def target(self) -> str:
        if len(self.sources) == 1:
            return self.sources[0].stem
        return f"{len(self.sources)}-FILES"

    def validate(self) -> list[str]:
        errors = []
        if not self.sources:
            errors.append("No .mkv files found")
        if self.output_dir is None and not self.suffix:
            errors.append("An output directory or a suffix is required to avoid overwriting sources")
        for source in self.sources:
            if output_path_for(source, self.output_dir, self.suffix).resolve() == source.resolve():
                errors.append(f"Output would overwrite {source}")
        return errors

    def get_plan(self) -> str:
        languages = ", ".join(self.policy.audio_languages) or "all"
        subtitles = ", ".join(self.policy.subtitle_languages) or "all"
        lines = [
            f"Audio languages kept: {languages}",
            f"Subtitle languages kept: {subtitles}",
        ]
        for source in self.sources:
            lines.append(f"{source} -> {output_path_for(source, self.output_dir, self.suffix)}")
        return "\n".join(lines)

    def process(self, source: Path) -> RemuxOutcome:
        tracks = self.toolkit.identify(source)
        plan = select_tracks(tracks, self.policy)
        output = output_path_for(source, self.output_dir, self.suffix)

        if self.preflight and plan.changes_anything and not self.dry_run:
            report = self.checker.run_checks(
                {"target_path": str(output.parent), "required_bytes": source.stat().st_size}
            )
            if report.has_errors:
                return RemuxOutcome(source, None, False, report.failed_checks[0].message, plan)

        ok, message = self.toolkit.remux(source, output, plan, dry_run=self.dry_run)
        produced = output if ok and plan.changes_anything and not self.dry_run else None
        return RemuxOutcome(source, produced, ok, message, plan)

    def execute(self, context: JobContext) -> list[RemuxOutcome]:
        outcomes: list[RemuxOutcome] = []
        if self.preflight and not self.dry_run:
            report = self.tool_checker.run_checks({"tool": self.toolkit.executable})
            if report.has_errors:
                raise RuntimeError(report.failed_checks[0].message)

        if self.output_dir is not None and not self.dry_run:
            self.output_dir.mkdir(parents=True, exist_ok=True)

        context.update_progress(current=0, total=len(self.sources), stage="remux")
        for index, source in enumerate(self.sources, 1):
            context.check_cancelled()
            try:
                outcome = self.process(source)
            except (CommandError, ValueError, OSError) as e:
                outcome = RemuxOutcome(source, None, False, f"{source.name}: {e}")

            if not outcome.success:
                context.add_warning(outcome.message)
            elif outcome.plan is not None:
                for warning in outcome.plan.warnings:
                    context.add_warning(f"{source.name}: {warning}")
            outcomes.append(outcome)
            context.update_progress(current=index, message=outcome.message)

        if outcomes and not any(o.success for o in outcomes):
            raise RuntimeError("No file could be processed")
        return outcomes
