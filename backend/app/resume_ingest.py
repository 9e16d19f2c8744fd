from __future__ import annotations

import hashlib
import json
import logging
import re
import zipfile
from io import BytesIO
from pathlib import PurePath
from typing import Any

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .errors import ProviderError, ValidationError
from .providers import ProviderAdapter
from .record_store import (
    LIVE_STORE,
    StoreView,
    delete_record,
    find_records_by_fields,
    insert_record,
    list_records,
    update_record,
)
from .resume_store import create_import, delete_import, fetch_import_by_hash, finalize_import

logger = logging.getLogger("meyaml.resume")

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
MAX_RESUME_CHARS = 16_000
PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
FORMAT_BY_MIME = {PDF_MIME: "pdf", DOCX_MIME: "docx"}
FORMAT_BY_SUFFIX = {".pdf": "pdf", ".docx": "docx"}

TRUNCATED_TEXT_WARNING = "Resume text was very long and had to be truncated - some information may be missing"
REPAIRED_JSON_WARNING = "AI response was incomplete - some data may be missing"

# Natural keys used to skip items already present in the store.
DEDUP_KEYS: dict[str, tuple[str, ...]] = {
    "experience": ("title", "company"),
    "education": ("institution", "degree"),
    "skills": ("name",),
    "certifications": ("name", "issuer"),
    "projects": ("title",),
    "awards": ("title",),
    "talks": ("title", "event"),
}
PROFILE_IMPORT_FIELDS = ("name", "headline", "location", "summary", "contact_email")

PARSING_PROMPT_TEMPLATE = '''You are an expert resume parser. Extract structured data from the resume text below.

Resume text:
"""
{resume_text}
"""

Extract the following sections and return ONLY valid JSON (no explanations, no markdown):

{{
  "profile": {{
    "name": "Full Name",
    "headline": "Professional title or headline",
    "location": "City, State/Country",
    "summary": "Professional summary or objective (2-3 sentences)",
    "contact_email": "email@example.com"
  }},
  "experience": [
    {{
      "company": "Company Name",
      "title": "Job Title",
      "location": "City, State",
      "start_date": "YYYY-MM",
      "end_date": "YYYY-MM or null if current",
      "description": "Brief role description",
      "bullets": ["Achievement 1", "Achievement 2"],
      "skills": ["Skill1", "Skill2"]
    }}
  ],
  "education": [
    {{
      "institution": "University/School Name",
      "degree": "Degree Type (BS, MS, PhD, etc.)",
      "field": "Field of Study",
      "start_date": "YYYY-MM",
      "end_date": "YYYY-MM",
      "description": "Honors, GPA, relevant activities"
    }}
  ],
  "skills": [
    {{"name": "Skill Name", "category": "Programming|Tools|Languages|Soft Skills", "proficiency": "expert|proficient|familiar"}}
  ],
  "certifications": [
    {{
      "name": "Certification Name",
      "issuer": "Issuing Organization",
      "issue_date": "YYYY-MM",
      "expiry_date": "YYYY-MM or null if no expiry",
      "credential_id": "ID if present",
      "credential_url": "URL if present"
    }}
  ],
  "projects": [
    {{
      "title": "Project Name",
      "summary": "One-sentence summary",
      "description": "Detailed description (2-3 sentences)",
      "tech_stack": ["Technology1", "Technology2"],
      "links": [{{"type": "github|demo|website", "url": "https://..."}}]
    }}
  ],
  "awards": [
    {{"title": "Award Name", "issuer": "Issuing Organization", "awarded_at": "YYYY-MM", "description": "Significance"}}
  ],
  "talks": [
    {{"title": "Talk Title", "event": "Event Name", "date": "YYYY-MM", "location": "City, State", "description": "Talk description"}}
  ],
  "metadata": {{
    "confidence": "high|medium|low",
    "warnings": ["Warning 1"],
    "notes": "Any parsing notes for the user"
  }}
}}

PARSING RULES:
1. Extract dates in YYYY-MM format. If only the year is given, use "YYYY-01".
2. Use null for end_date if the position is current ("Present", "Current", "Now").
3. Preserve bullet points as separate array items.
4. Categorize skills logically (Programming, Tools, Soft Skills, Languages).
5. Split freelance or contract work with multiple clients into separate experience items.
6. If confidence is low for any section, note it in metadata.warnings.
7. For ambiguous proficiency levels, default to "proficient".
8. Do not invent data. If information is not clearly present, omit the field.
9. Merge near-duplicate skills (e.g. "JavaScript" and "JS") and add a warning.
10. Keep the professional summary to 2-3 sentences.

Return ONLY the JSON object.'''


def detect_upload_format(*, filename: str, content_type: str | None) -> str:
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime in FORMAT_BY_MIME:
        return FORMAT_BY_MIME[mime]

    suffix = PurePath(filename or "").suffix.lower()
    if suffix in FORMAT_BY_SUFFIX:
        return FORMAT_BY_SUFFIX[suffix]

    raise ValidationError(
        "file: unsupported type, upload a PDF or DOCX resume",
        user_action="Save your resume as PDF or DOCX and try again.",
    )


def validate_upload(content: bytes, *, filename: str, content_type: str | None) -> str:
    if not content:
        raise ValidationError("file: required", user_action="Select a PDF or DOCX resume file and try again.")
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError(
            "file: too large (maximum 5 MB)",
            user_action="Use a file smaller than 5 MB.",
        )
    return detect_upload_format(filename=filename, content_type=content_type)


def extract_text(content: bytes, upload_format: str) -> str:
    try:
        if upload_format == "pdf":
            reader = PdfReader(BytesIO(content))
            pages = [(page.extract_text() or "").strip() for page in reader.pages]
            text = "\n\n".join(page for page in pages if page)
        else:
            document = Document(BytesIO(content))
            parts = [paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()]
            for table in document.tables:
                for row in table.rows:
                    cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                    if cells:
                        parts.append(" | ".join(cells))
            text = "\n".join(parts)
    except (PdfReadError, PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError, OSError) as exc:
        raise ValidationError(
            "file: could not read the document",
            user_action="Make sure the file is not password protected or corrupted, then try again.",
            developer_detail=str(exc),
        ) from exc

    text = text.strip()
    if not text:
        raise ValidationError(
            "file: no text found in the document",
            user_action="If the resume is a scanned image, export it as a text-based PDF or DOCX.",
        )
    return text


def build_parsing_prompt(resume_text: str) -> str:
    return PARSING_PROMPT_TEMPLATE.format(resume_text=resume_text)


def strip_json_fences(response: str) -> str:
    content = (response or "").strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?", "", content).strip()
        closing = content.rfind("```")
        if closing != -1:
            content = content[:closing]
    content = content.strip()

    start = content.find("{")
    if start > 0:
        content = content[start:]
    return content


def _closers(stack: list[str]) -> str:
    return "".join("}" if opener == "{" else "]" for opener in reversed(stack))


def repair_truncated_json(text: str) -> dict[str, Any]:
    """Close the brackets of a truncated JSON object, dropping any partial trailing value."""
    stack: list[str] = []
    cut_points: list[tuple[int, list[str]]] = []
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append(char)
            cut_points.append((index + 1, list(stack)))
        elif char in "}]":
            if stack:
                stack.pop()
            cut_points.append((index + 1, list(stack)))
        elif char == ",":
            cut_points.append((index, list(stack)))

    candidates = [(len(text), stack)] if not in_string else []
    candidates.extend(reversed(cut_points))
    for end, open_stack in candidates:
        if not open_stack:
            continue
        candidate = text[:end].rstrip().rstrip(",") + _closers(open_stack)
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ValueError("response is not repairable JSON")


def parse_resume_response(response: str) -> tuple[dict[str, Any], list[str]]:
    cleaned = strip_json_fences(response)
    try:
        parsed = json.loads(cleaned)
        if not isinstance(parsed, dict):
            raise ValueError("resume response is not a JSON object")
        return parsed, []
    except (json.JSONDecodeError, ValueError) as exc:
        try:
            return repair_truncated_json(cleaned), [REPAIRED_JSON_WARNING]
        except ValueError:
            raise ProviderError(
                "We couldn't understand the AI response for your resume.",
                body=cleaned[:500],
                user_action="Try again, or pick a different AI provider in Settings.",
            ) from exc


def _as_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def validate_and_enrich(parsed: dict[str, Any], *, extra_warnings: list[str] | None = None) -> dict[str, Any]:
    metadata = parsed.get("metadata") if isinstance(parsed.get("metadata"), dict) else {}
    warnings = [str(item) for item in metadata.get("warnings") or [] if item]
    warnings.extend(extra_warnings or [])
    confidence = str(metadata.get("confidence") or "").strip().lower()

    profile = parsed.get("profile") if isinstance(parsed.get("profile"), dict) else {}
    if not str(profile.get("name") or "").strip():
        warnings.append("No name found in resume")
        confidence = "low"

    seen_skills: set[str] = set()
    for skill in _as_list(parsed.get("skills")):
        name = str(skill.get("name") or "").strip()
        key = name.lower()
        if key and key in seen_skills:
            warnings.append(f"Duplicate skill detected: {name}")
        seen_skills.add(key)

    for index, experience in enumerate(_as_list(parsed.get("experience")), start=1):
        company = str(experience.get("company") or "")
        title = str(experience.get("title") or "")
        if "freelance" in company.lower() or "consulting" in company.lower() or "consultant" in title.lower():
            warnings.append(
                f"Experience #{index} ({company}): Consider splitting if multiple clients were involved"
            )

    if confidence not in {"high", "medium", "low"}:
        if not warnings:
            confidence = "high"
        elif len(warnings) <= 2:
            confidence = "medium"
        else:
            confidence = "low"

    parsed["profile"] = profile
    parsed["metadata"] = {
        "confidence": confidence,
        "warnings": warnings,
        "notes": str(metadata.get("notes") or ""),
    }
    return parsed


def _natural_key(collection: str, item: dict[str, Any]) -> dict[str, str] | None:
    fields = DEDUP_KEYS[collection]
    key = {name: str(item.get(name) or "").strip() for name in fields}
    if not key[fields[0]]:
        return None
    return key


class ResumeIngestor:
    def __init__(self, adapter: ProviderAdapter) -> None:
        self.adapter = adapter

    def parse(self, provider: dict[str, Any], resume_text: str) -> dict[str, Any]:
        warnings: list[str] = []
        if len(resume_text) > MAX_RESUME_CHARS:
            resume_text = resume_text[:MAX_RESUME_CHARS]
            warnings.append(TRUNCATED_TEXT_WARNING)

        response = self.adapter.call(provider, build_parsing_prompt(resume_text))
        parsed, parse_warnings = parse_resume_response(response)
        return validate_and_enrich(parsed, extra_warnings=[*warnings, *parse_warnings])

    def _import_profile(self, profile: dict[str, Any], *, import_id: str, store: StoreView) -> str | None:
        fields = {
            name: str(profile.get(name) or "").strip()
            for name in PROFILE_IMPORT_FIELDS
            if str(profile.get(name) or "").strip()
        }
        if not fields:
            return None

        collection = store.write_collection("profile")
        existing = list_records(collection, limit=1)
        if not existing:
            created = insert_record(collection, {**fields, "visibility": "private", "resume_import_id": import_id})
            return created["id"]

        current = existing[0]
        missing = {name: value for name, value in fields.items() if not str(current.get(name) or "").strip()}
        if missing:
            update_record(collection, current["id"], missing)
            return current["id"]
        return None

    def _import_records(
        self,
        parsed: dict[str, Any],
        *,
        import_id: str,
        store: StoreView,
        imported: dict[str, list[str]],
    ) -> int:
        deduplicated = 0

        for collection in DEDUP_KEYS:
            target = store.write_collection(collection)
            for sort_order, item in enumerate(_as_list(parsed.get(collection))):
                key = _natural_key(collection, item)
                if key is None:
                    continue
                if find_records_by_fields(target, key):
                    deduplicated += 1
                    continue
                record = {
                    name: value
                    for name, value in item.items()
                    if value is not None and name not in {"id", "visibility", "is_draft"}
                }
                record.update(
                    {
                        "visibility": "private",
                        "is_draft": False,
                        "sort_order": sort_order,
                        "resume_import_id": import_id,
                    }
                )
                imported.setdefault(collection, []).append(insert_record(target, record)["id"])

        return deduplicated

    def _discard_records(self, imported: dict[str, list[str]], *, store: StoreView) -> None:
        for collection, record_ids in imported.items():
            target = store.write_collection(collection)
            for record_id in record_ids:
                delete_record(target, record_id)

    def ingest(
        self,
        *,
        content: bytes,
        filename: str,
        content_type: str | None,
        provider: dict[str, Any],
        store: StoreView = LIVE_STORE,
    ) -> dict[str, Any]:
        upload_format = validate_upload(content, filename=filename, content_type=content_type)

        file_hash = hashlib.sha256(content).hexdigest()
        existing = fetch_import_by_hash(file_hash)
        if existing is not None:
            return {"status": "duplicate", "import_id": existing["id"], "filename": existing["filename"]}

        resume_text = extract_text(content, upload_format)

        claimed = create_import(file_hash=file_hash, filename=filename, ai_provider_id=provider["id"])
        if claimed is None:
            existing = fetch_import_by_hash(file_hash)
            return {
                "status": "duplicate",
                "import_id": existing["id"] if existing else None,
                "filename": filename,
            }
        import_id = claimed["id"]

        imported: dict[str, list[str]] = {name: [] for name in DEDUP_KEYS}
        try:
            parsed = self.parse(provider, resume_text)
            deduplicated = self._import_records(parsed, import_id=import_id, store=store, imported=imported)
            profile_id = self._import_profile(parsed["profile"], import_id=import_id, store=store)

            records = {**imported, "profile": [profile_id]} if profile_id else dict(imported)
            counts = {name: len(ids) for name, ids in records.items()}
            metadata = parsed["metadata"]
            finalize_import(
                import_id,
                imported_records=records,
                counts=counts,
                warnings=metadata["warnings"],
                confidence=metadata["confidence"],
            )
        except Exception:
            self._discard_records(imported, store=store)
            delete_import(import_id)
            raise

        logger.info(
            json.dumps(
                {
                    "event": "resume.ingest.completed",
                    "import_id": import_id,
                    "counts": counts,
                    "deduplicated": deduplicated,
                    "confidence": metadata["confidence"],
                },
                ensure_ascii=False,
            )
        )
        return {
            "status": "success",
            "import_id": import_id,
            "imported": sum(counts.values()),
            "counts": counts,
            "deduplicated": deduplicated,
            "warnings": metadata["warnings"],
            "confidence": metadata["confidence"],
            "filename": filename,
        }
