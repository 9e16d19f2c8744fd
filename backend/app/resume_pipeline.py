from __future__ import annotations

import json
import logging
import os
import re
import secrets
import shutil
import subprocess
import tempfile
import threading
import time
from concurrent import futures
from dataclasses import asdict, dataclass, field as dataclass_field
from typing import Any, Callable

from .errors import ProcessingError, ProviderError
from .providers import ProviderAdapter
from .record_store import LIVE_STORE, StoreView, save_record_file
from .resume_store import (
    EXPORTS_COLLECTION,
    create_export,
    mark_export_completed,
    mark_export_failed,
)
from .view_gate import build_view_payload

logger = logging.getLogger("meyaml.resume")

DEFAULT_STYLE = "chronological"
DEFAULT_LENGTH = "two-page"
DEFAULT_FORMAT = "pdf"
CANCELED_MESSAGE = "canceled"
PROCESS_POLL_SECONDS = 0.2
CANCEL_POLL_SECONDS = 0.2
PROVIDER_CALL_WORKERS = 4

BASE_PANDOC_ARGS = ("-V", "geometry:margin=0.75in", "-V", "fontsize=11pt", "--standalone")
PRIMARY_PDF_ARGS = ("-V", "mainfont=TeX Gyre Heros", "-V", "mainfontfallback=Arial", "--pdf-engine=xelatex")
FALLBACK_PDF_ARGS = ("--pdf-engine=pdflatex", "-V", "fontfamily=helvet", "-V", "fontfamilyoptions=scaled=0.95")

FALLBACK_TRIGGERS = ("xelatex", "xetex", "fontspec", "cannot be found")

# Checked in order; the first kind whose substrings all appear wins.
PANDOC_ERROR_PATTERNS: list[tuple[str, tuple[str, ...]]] = [
    ("missing_package", (".sty' not found",)),
    ("missing_package", ("File `", "not found")),
    ("missing_engine", ("pdflatex not found",)),
    ("missing_engine", ("pdflatex: not found",)),
    ("font_error", ("Font", "not found")),
    ("font_error", ("Font", "error")),
    ("pdf_failed", ("Error producing PDF",)),
]
PACKAGE_NAME_PATTERN = re.compile(r"File `([^']+)' not found")
DOCX_HINT = "Try DOCX format instead, or rebuild the server image with full LaTeX support."

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass
class GenerationConfig:
    target_role: str = ""
    style: str = DEFAULT_STYLE
    length: str = DEFAULT_LENGTH
    emphasis: list[str] = dataclass_field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Deadline:
    """Wall-clock budget for one generation, also tripped by ``cancel()``."""

    def __init__(
        self,
        seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._clock = clock
        self.expires_at = clock() + seconds
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def is_over(self) -> bool:
        return self.cancel_event.is_set() or self.remaining() <= 0

    def check(self) -> float:
        if self.cancel_event.is_set():
            raise ProcessingError("canceled", CANCELED_MESSAGE, user_action="Try again when you are ready.")
        remaining = self.remaining()
        if remaining <= 0:
            raise ProcessingError("canceled", CANCELED_MESSAGE, user_action="Try again; generation took too long.")
        return remaining


def run_process(
    cmd: list[str],
    *,
    timeout: float,
    should_cancel: Callable[[], bool] | None = None,
    **kwargs: Any,
) -> subprocess.CompletedProcess:
    """subprocess.run with a kill switch polled while the process is alive."""
    kwargs.pop("check", None)
    if kwargs.pop("capture_output", False):
        kwargs["stdout"] = subprocess.PIPE
        kwargs["stderr"] = subprocess.PIPE

    started = time.monotonic()
    with subprocess.Popen(cmd, **kwargs) as process:
        while True:
            try:
                stdout, stderr = process.communicate(timeout=PROCESS_POLL_SECONDS)
                return subprocess.CompletedProcess(cmd, process.returncode, stdout, stderr)
            except subprocess.TimeoutExpired:
                canceled = should_cancel is not None and should_cancel()
                if not canceled and time.monotonic() - started < timeout:
                    continue
                process.kill()
                process.communicate()
                raise subprocess.TimeoutExpired(cmd, timeout)


def classify_pandoc_error(stderr: str) -> ProcessingError:
    message = stderr or ""
    kind = "generic"
    for candidate, needles in PANDOC_ERROR_PATTERNS:
        if all(needle in message for needle in needles):
            kind = candidate
            break

    if kind == "missing_package":
        match = PACKAGE_NAME_PATTERN.search(message)
        if match:
            text = f"PDF generation requires LaTeX package '{match.group(1)}' which is not installed."
        else:
            text = "PDF generation requires additional LaTeX packages."
    elif kind == "missing_engine":
        text = "PDF generation requires pdflatex (LaTeX) which is not installed."
    elif kind == "font_error":
        text = "PDF generation encountered a font error."
    elif kind == "pdf_failed":
        text = "PDF generation failed."
    else:
        return ProcessingError(
            "generic",
            f"Document conversion failed: {message.strip()[:500]}",
            user_action="Check the server logs for details.",
            developer_detail=message,
        )
    return ProcessingError(kind, text, user_action=DOCX_HINT, developer_detail=message)


def clean_markdown(markdown: str) -> str:
    content = (markdown or "").strip()
    for opener in ("```markdown", "```md", "```"):
        if content.startswith(opener):
            content = content[len(opener):]
            closing = content.rfind("```")
            if closing != -1:
                content = content[:closing]
            break
    return content.strip()


def _without_primary_pdf_args(args: list[str]) -> list[str]:
    filtered: list[str] = []
    skip_next = False
    for index, arg in enumerate(args):
        if skip_next:
            skip_next = False
            continue
        if arg.startswith("--pdf-engine="):
            continue
        if arg == "-V" and index + 1 < len(args) and args[index + 1].startswith(("mainfont=", "mainfontfallback=")):
            skip_next = True
            continue
        filtered.append(arg)
    return filtered


class PandocConverter:
    def __init__(self, binary: str = "pandoc", *, runner: Runner = run_process) -> None:
        self.binary = binary
        self._runner = runner

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run(self, args: list[str], *, deadline: Deadline) -> subprocess.CompletedProcess:
        try:
            return self._runner(
                [self.binary, *args],
                capture_output=True,
                text=True,
                timeout=deadline.check(),
                check=False,
                should_cancel=deadline.is_over,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProcessingError("canceled", CANCELED_MESSAGE, user_action="Try again; conversion took too long.") from exc
        except FileNotFoundError as exc:
            raise ProcessingError(
                "unavailable",
                "PDF generation is not available. Pandoc is not installed.",
                developer_detail=str(exc),
            ) from exc

    def convert(self, markdown: str, export_format: str, *, deadline: Deadline) -> bytes:
        fd, input_path = tempfile.mkstemp(prefix="resume-", suffix=".md")
        output_path = f"{input_path}.{export_format}"
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(markdown)

            args = [input_path, "-o", output_path, *BASE_PANDOC_ARGS]
            if export_format == "pdf":
                args.extend(PRIMARY_PDF_ARGS)

            result = self._run(args, deadline=deadline)
            if result.returncode != 0:
                stderr = result.stderr or ""
                logger.warning(
                    json.dumps(
                        {"event": "resume.pandoc.failed", "attempt": "primary", "stderr": stderr[:500]},
                        ensure_ascii=False,
                    )
                )
                if export_format != "pdf" or not any(trigger in stderr for trigger in FALLBACK_TRIGGERS):
                    raise classify_pandoc_error(stderr)

                fallback_args = [*_without_primary_pdf_args(args), *FALLBACK_PDF_ARGS]
                result = self._run(fallback_args, deadline=deadline)
                if result.returncode != 0:
                    logger.warning(
                        json.dumps(
                            {"event": "resume.pandoc.failed", "attempt": "fallback", "stderr": (result.stderr or "")[:500]},
                            ensure_ascii=False,
                        )
                    )
                    raise classify_pandoc_error(result.stderr or "")

            try:
                with open(output_path, "rb") as handle:
                    content = handle.read()
            except FileNotFoundError as exc:
                raise ProcessingError("generic", "Document conversion produced no output.") from exc
            if not content:
                raise ProcessingError("generic", "Document conversion produced no output.")
            return content
        finally:
            for path in (input_path, output_path):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass


def _format_item(section: str, item: dict[str, Any]) -> list[str]:
    def text(key: str) -> str:
        value = item.get(key)
        return value.strip() if isinstance(value, str) else ""

    lines: list[str] = []
    if section == "experience":
        lines.append(f"- Title: {text('title')}")
        for key, label in (("company", "Company"), ("location", "Location"), ("start_date", "Start"), ("end_date", "End")):
            if text(key):
                lines.append(f"  {label}: {text(key)}")
        if item.get("is_current"):
            lines.append("  Current: Yes")
        if text("description"):
            lines.append(f"  Description: {text('description')}")
        bullets = [str(bullet) for bullet in item.get("bullets") or [] if bullet]
        if bullets:
            lines.append("  Bullets:")
            lines.extend(f"    - {bullet}" for bullet in bullets)
    elif section == "education":
        lines.append(f"- Degree: {text('degree')}")
        for key, label in (("field", "Field"), ("institution", "Institution"), ("end_date", "Graduation")):
            if text(key):
                lines.append(f"  {label}: {text(key)}")
    elif section == "skills":
        line = f"- {text('name')}"
        if text("category"):
            line += f" (Category: {text('category')})"
        if text("proficiency"):
            line += f" [{text('proficiency')}]"
        lines.append(line)
    elif section == "projects":
        lines.append(f"- Project: {text('title')}")
        if text("summary"):
            lines.append(f"  Summary: {text('summary')}")
        tech = [str(entry) for entry in item.get("tech_stack") or [] if entry]
        if tech:
            lines.append(f"  Tech: {', '.join(tech)}")
    elif section == "certifications":
        line = f"- {text('name')}"
        if text("issuer"):
            line += f" by {text('issuer')}"
        if text("issue_date"):
            line += f" ({text('issue_date')})"
        lines.append(line)
    else:
        for key, value in item.items():
            if key in {"id", "visibility", "is_draft", "sort_order", "created_at", "updated_at"}:
                continue
            if isinstance(value, str) and value.strip():
                lines.append(f"- {key}: {value.strip()}")
    return lines


def build_resume_prompt(view_data: dict[str, Any], config: GenerationConfig) -> str:
    lines = [
        "You are an expert resume writer. Generate a professional resume in clean Markdown format.",
        "",
        "WRITING STYLE RULES:",
        "- Write like a human. Be direct and natural.",
        "- Use active voice and strong action verbs (led, built, designed, implemented, improved).",
        "- Be concise; every word should add value.",
        "- Quantify achievements only where the data below provides numbers. Never invent numbers.",
        "- Focus on impact and results, not just responsibilities.",
        "",
        "TARGET CONTEXT:",
    ]
    if config.target_role:
        lines.append(f"- Target Role: {config.target_role}")
    lines.append(f"- Resume Style: {config.style}")
    lines.append(f"- Length Constraint: {config.length}")
    if config.emphasis:
        lines.append(f"- Emphasis Areas: {', '.join(config.emphasis)}")
    lines.append("")

    lines.append("PROFILE DATA:")
    profile = view_data.get("profile") or {}
    for key, label in (
        ("name", "Name"),
        ("headline", "Title/Headline"),
        ("location", "Location"),
        ("contact_email", "Email"),
        ("summary", "Summary"),
    ):
        value = profile.get(key)
        if isinstance(value, str) and value.strip():
            lines.append(f"{label}: {value.strip()}")
    if view_data.get("hero_headline"):
        lines.append(f"Custom Headline for this view: {view_data['hero_headline']}")
    if view_data.get("hero_summary"):
        lines.append(f"Custom Summary for this view: {view_data['hero_summary']}")
    lines.append("")

    sections = view_data.get("sections") or {}
    for section in view_data.get("section_order") or []:
        items = sections.get(section) or []
        if not items:
            continue
        lines.append(f"=== {section.upper()} ===")
        for item in items:
            lines.extend(_format_item(section, item))
        lines.append("")

    lines.extend(
        [
            "OUTPUT REQUIREMENTS:",
            "1. Generate clean Markdown suitable for PDF conversion via Pandoc.",
            "2. Use these sections in order, skipping any without data: Contact Info, Professional Summary, "
            "Experience, Education, Skills, Projects, Certifications.",
            "3. For Experience, write achievement-focused bullet points that start with action verbs.",
            "4. For Skills, group by category if categories are provided.",
            "5. Keep formatting simple: headers (#, ##), bullet points (-) and bold (**) only.",
            "6. Do NOT include any code blocks, code fences, explanations, or commentary.",
            "7. Start directly with the person's name as an H1 header.",
            "",
            "Return ONLY the Markdown content for the resume.",
        ]
    )
    return "\n".join(lines)


def _log_stage(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, ensure_ascii=False))


def build_download_url(export_id: str, filename: str) -> str:
    return f"/api/files/{EXPORTS_COLLECTION}/{export_id}/{filename}"


class ResumeGenerator:
    """Runs one export from ``processing`` to ``completed`` or ``failed``."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        converter: PandocConverter,
        *,
        timeout_seconds: float = 120,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapter = adapter
        self.converter = converter
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._calls = futures.ThreadPoolExecutor(
            max_workers=PROVIDER_CALL_WORKERS,
            thread_name_prefix="resume-provider",
        )

    def close(self) -> None:
        self._calls.shutdown(wait=False, cancel_futures=True)

    def _call_provider(self, provider: dict[str, Any], prompt: str, deadline: Deadline) -> str:
        # An abandoned call keeps running until its own httpx timeout; its result is dropped.
        pending = self._calls.submit(self.adapter.call, provider, prompt, timeout=deadline.check())
        while True:
            try:
                return pending.result(timeout=CANCEL_POLL_SECONDS)
            except futures.TimeoutError:
                deadline.check()
            except ProviderError as exc:
                if deadline.is_over():
                    raise ProcessingError(
                        "canceled",
                        CANCELED_MESSAGE,
                        user_action="Try again; generation took too long.",
                        developer_detail=exc.message,
                    ) from exc
                raise

    def generate(
        self,
        *,
        view: dict[str, Any],
        provider: dict[str, Any],
        export_format: str,
        config: GenerationConfig,
        store: StoreView = LIVE_STORE,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        deadline = Deadline(self.timeout_seconds, clock=self.clock, cancel_event=cancel_event)
        export = create_export(
            view_id=view["id"],
            export_format=export_format,
            ai_provider_id=provider["id"],
            generation_config=config.to_dict(),
        )
        export_id = export["id"]
        _log_stage(
            "resume.generate.started",
            export_id=export_id,
            view_id=view["id"],
            format=export_format,
            provider_type=provider["type"],
        )

        try:
            view_data = build_view_payload(view, store=store)
            prompt = build_resume_prompt(view_data, config)

            markdown = self._call_provider(provider, prompt, deadline)
            deadline.check()
            markdown = clean_markdown(markdown)
            if not markdown:
                raise ProviderError("AI provider returned an empty resume")
            _log_stage("resume.generate.markdown_ready", export_id=export_id, chars=len(markdown))

            content = self.converter.convert(markdown, export_format, deadline=deadline)
            deadline.check()

            filename = f"resume_{secrets.token_hex(5)}.{export_format}"
            save_record_file(EXPORTS_COLLECTION, export_id, filename, content)
            completed = mark_export_completed(export_id, filename=filename)
        except (ProviderError, ProcessingError) as exc:
            message = CANCELED_MESSAGE if isinstance(exc, ProcessingError) and exc.kind == "canceled" else exc.message
            mark_export_failed(export_id, error_message=message)
            _log_stage(
                "resume.generate.failed",
                export_id=export_id,
                error_type=type(exc).__name__,
                error=message,
            )
            raise
        except Exception:
            mark_export_failed(export_id, error_message="internal error")
            logger.exception(json.dumps({"event": "resume.generate.crashed", "export_id": export_id}))
            raise

        if completed is None:
            raise ProcessingError("generic", "export record disappeared during generation")
        _log_stage("resume.generate.completed", export_id=export_id, bytes=len(content))
        completed["download_url"] = build_download_url(export_id, completed["file"])
        return completed
