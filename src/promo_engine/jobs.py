"""Job records and their on-disk store.

A job lives in ``<root>/<job_id>/`` with its record in ``job.json``. The
directory is private to the job; source clips are copied in when attached
and every render artifact is written beside them.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .analysis import CLIP_ROLES, Analysis
from .errors import JobNotFound, ValidationError
from .probe import MediaInfo, probe_media

logger = logging.getLogger(__name__)

JOB_FILE = "job.json"
VIDEO_EXTS = {".mov", ".mp4", ".m4v", ".avi"}

Prober = Callable[[Path], MediaInfo]


@dataclass
class Job:
    job_id: str
    work_dir: Path
    created_at: str
    clips: Dict[str, str] = field(default_factory=dict)
    clip_info: Dict[str, MediaInfo] = field(default_factory=dict)
    analysis: Optional[Analysis] = None
    artist_name: Optional[str] = None
    custom_crowd: bool = False
    stock: Optional[Dict[str, Any]] = None
    segments: List[Dict[str, Any]] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    thumbnail: Optional[str] = None
    total_duration: Optional[float] = None

    def clip_path(self, role: str) -> Optional[Path]:
        p = self.clips.get(role)
        return Path(p) if p else None

    def missing_clips(self) -> List[str]:
        return [r for r in CLIP_ROLES if not self.clips.get(r) or not Path(self.clips[r]).exists()]

    @property
    def is_renderable(self) -> bool:
        artist = self.clip_info.get("artist")
        return not self.missing_clips() and artist is not None and artist.has_audio

    def ensure_renderable(self) -> None:
        missing = self.missing_clips()
        if missing:
            raise ValidationError(f"Missing clip(s): {', '.join(missing)}. Fetch crowd footage or upload first.")
        artist = self.clip_info.get("artist")
        if artist is None or not artist.has_audio:
            raise ValidationError("Artist clip must have audio; it is the soundtrack for the entire video")

    def download_name(self) -> str:
        if self.artist_name:
            return f"{re.sub(r'[^a-zA-Z0-9]', '_', self.artist_name)}_music_video.mp4"
        return "music_video.mp4"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "type": "music-video",
            "createdAt": self.created_at,
            "clips": dict(self.clips),
            "clipInfo": {r: info.to_dict() for r, info in self.clip_info.items()},
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "artistName": self.artist_name,
            "customCrowd": self.custom_crowd,
            "stock": self.stock,
            "segments": list(self.segments),
            "outputs": dict(self.outputs),
            "thumbnail": self.thumbnail,
            "totalDuration": self.total_duration,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], work_dir: Path) -> "Job":
        analysis = data.get("analysis")
        return cls(
            job_id=str(data["jobId"]),
            work_dir=work_dir,
            created_at=str(data.get("createdAt", "")),
            clips=dict(data.get("clips") or {}),
            clip_info={r: MediaInfo.from_dict(v) for r, v in (data.get("clipInfo") or {}).items()},
            analysis=Analysis.from_dict(analysis) if analysis else None,
            artist_name=data.get("artistName"),
            custom_crowd=bool(data.get("customCrowd")),
            stock=data.get("stock"),
            segments=list(data.get("segments") or []),
            outputs=dict(data.get("outputs") or {}),
            thumbnail=data.get("thumbnail"),
            total_duration=data.get("totalDuration"),
        )


class JobStore:
    def __init__(self, root: Path, prober: Prober = probe_media):
        self.root = root
        self.prober = prober

    def job_dir(self, job_id: str) -> Path:
        if not re.fullmatch(r"[A-Za-z0-9_-]+", job_id or ""):
            raise JobNotFound(f"Invalid job id: {job_id!r}")
        return self.root / job_id

    def create(self, clips: Optional[Mapping[str, Path]] = None, artist_name: Optional[str] = None) -> Job:
        """Create a job and attach the given clips; nothing is persisted if any clip is rejected."""
        job_id = uuid.uuid4().hex
        work_dir = self.job_dir(job_id)
        job = Job(
            job_id=job_id,
            work_dir=work_dir,
            created_at=datetime.now(timezone.utc).isoformat(),
            artist_name=artist_name,
        )
        try:
            for role, path in (clips or {}).items():
                self.attach_clip(job, role, path, save=False)
        except Exception:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise
        self.save(job)
        logger.info("created job %s with clips %s", job_id, ",".join(sorted(job.clips)) or "none")
        return job

    def load(self, job_id: str) -> Job:
        work_dir = self.job_dir(job_id)
        path = work_dir / JOB_FILE
        if not path.exists():
            raise JobNotFound(f"Job not found: {job_id}")
        return Job.from_dict(json.loads(path.read_text(encoding="utf-8")), work_dir)

    def save(self, job: Job) -> None:
        job.work_dir.mkdir(parents=True, exist_ok=True)
        tmp = job.work_dir / (JOB_FILE + ".tmp")
        tmp.write_text(json.dumps(job.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(job.work_dir / JOB_FILE)

    def attach_clip(self, job: Job, role: str, source: Path, copy: bool = True, save: bool = True) -> MediaInfo:
        """Probe ``source`` and store it in the job's ``role`` slot.

        Raises
        ------
        ValidationError
            Unknown role, unsupported file type, or an artist clip without audio.
        """
        if role not in CLIP_ROLES:
            raise ValidationError(f"Unknown clip role: {role}")
        ext = source.suffix.lower()
        if ext not in VIDEO_EXTS:
            raise ValidationError("Video must be MOV, MP4, M4V, or AVI")
        info = self.prober(source)
        if role == "artist" and not info.has_audio:
            raise ValidationError("Artist clip must have audio; it is the soundtrack for the entire video")

        dest = source
        if copy:
            job.work_dir.mkdir(parents=True, exist_ok=True)
            dest = job.work_dir / f"{role}{ext}"
            if source.resolve() != dest.resolve():
                shutil.copy2(source, dest)
        job.clips[role] = str(dest)
        job.clip_info[role] = info
        if role == "crowd":
            job.custom_crowd = True
            job.stock = None
        if save:
            self.save(job)
        return info
