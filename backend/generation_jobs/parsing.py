import logging
import re
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from .config import PipelineConfig
from .errors import PipelineError
from .models import Project, Target
from .states import ProjectStatus, TargetKind

logger = logging.getLogger(__name__)

PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")
SENTENCE_END = re.compile(r"(?<=[。！？.!?])\s*")


def create_project(
    title: str,
    source_text: str = "",
    *,
    source_type: str = "text",
    owner_ref: str = "",
    settings_json: Optional[Dict[str, Any]] = None,
) -> Project:
    title = str(title or "").strip()
    if not title:
        raise PipelineError("TITLE_REQUIRED", "Project title is required")
    if source_type not in {"text", "audio"}:
        raise PipelineError("INVALID_SOURCE_TYPE", f"Unsupported source type: {source_type}")
    project = Project.objects.create(
        title=title[:200],
        source_text=str(source_text or ""),
        source_type=source_type,
        owner_ref=str(owner_ref or "").strip(),
        settings_json=settings_json or {},
    )
    logger.info("project %s created (%s)", project.id, source_type)
    return project


def split_sentences(text: str) -> List[str]:
    return [part.strip() for part in SENTENCE_END.split(text) if part.strip()]


def split_into_chunks(text: str, config: Optional[PipelineConfig] = None) -> List[str]:
    config = config or PipelineConfig()
    min_size, ideal_size, max_size = config.chunk_min_chars, config.chunk_ideal_chars, config.chunk_max_chars
    chunks: List[str] = []
    current = ""

    for raw_paragraph in PARAGRAPH_BREAK.split(str(text or "")):
        paragraph = raw_paragraph.strip()
        if not paragraph:
            continue

        if len(paragraph) > max_size:
            if current:
                chunks.append(current.strip())
                current = ""
            pending = ""
            for sentence in split_sentences(paragraph):
                if len(pending) + len(sentence) > max_size and len(pending) > min_size:
                    chunks.append(pending.strip())
                    pending = sentence
                else:
                    pending = f"{pending} {sentence}" if pending else sentence
            current = pending
            continue

        if len(current) + len(paragraph) + 2 <= max_size:
            current = f"{current}\n\n{paragraph}" if current else paragraph
        else:
            if current:
                chunks.append(current.strip())
            current = paragraph

        if len(current) >= ideal_size:
            chunks.append(current.strip())
            current = ""

    if current.strip():
        chunks.append(current.strip())
    return [chunk for chunk in chunks if chunk]


def parse_project(project: Project, config: Optional[PipelineConfig] = None) -> List[Target]:
    project.refresh_from_db()
    if project.status != ProjectStatus.CREATED:
        raise PipelineError(
            "INVALID_STATUS",
            f"Cannot parse project with status: {project.status}",
            details={"current_status": project.status, "expected_status": ProjectStatus.CREATED},
        )
    if not str(project.source_text or "").strip():
        raise PipelineError("NO_SOURCE_TEXT", "No source text found for this project")

    chunks = split_into_chunks(project.source_text, config)
    with transaction.atomic():
        moved = Project.objects.filter(id=project.id, status=ProjectStatus.CREATED).update(
            status=ProjectStatus.PARSED, last_error="", updated_at=timezone.now()
        )
        if not moved:
            raise PipelineError("INVALID_STATUS", "Project was parsed concurrently")
        targets = Target.objects.bulk_create(
            [
                Target(
                    project=project,
                    kind=TargetKind.CHUNK_SCRIPT,
                    idx=index,
                    input_json={"text": chunk, "length": len(chunk)},
                )
                for index, chunk in enumerate(chunks, start=1)
            ]
        )
    project.status = ProjectStatus.PARSED
    logger.info("project %s parsed into %s chunk(s)", project.id, len(targets))
    return targets
