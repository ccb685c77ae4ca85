"""Conversion, versioning and document persistence.

The policy pipeline runs strictly in order: parse, normalize, render,
rasterize, decorate, upload, persist.  A failing stage raises
:class:`ConversionError` naming the stage, and nothing after it runs; in
particular no version row is written unless the decorated PDF was uploaded.
"""

import logging
import os
from datetime import datetime

from assembly import (
    IntakeFormData,
    brief_template,
    generate_brief_html,
    generate_download_html,
    generate_intake_form_html,
    intake_form_filename,
)
from compositor import compose_policy_pdf, make_pdf_name, rasterize
from docx_export import docx_filename, html_to_docx, storage_file_name
from errors import ConversionError
from metadata import PolicyMeta, extract_policy_meta
from models import Brief, IntakeForm, Policy, PolicyVersion, can_transition, get_session, latest_version_number
from normalizer import normalize_policy_html
from page_template import build_pdf_html, wrap_with_policy_template
from storage import build_key, storage_client
from text_extract import DOCX_MIMETYPE, docx_to_html, extract_raw_text

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200


def parse_policy_docx(data: bytes) -> tuple[PolicyMeta, str]:
    """Return the header metadata and normalized body HTML of a policy."""
    if not data:
        raise ConversionError("parse", "uploaded file is empty")
    try:
        meta = extract_policy_meta(extract_raw_text(data))
        raw_html = docx_to_html(data)
    except Exception as exc:
        logger.warning("parsing policy document failed: %s", exc)
        raise ConversionError("parse", str(exc)) from exc
    try:
        body = normalize_policy_html(raw_html)
    except Exception as exc:
        logger.warning("normalizing policy html failed: %s", exc)
        raise ConversionError("normalize", str(exc)) from exc
    logger.debug("parsed policy %r (%d chars of html)", meta.number, len(body))
    return meta, body


def render_preview(data: bytes, mode: str = "preview") -> tuple[PolicyMeta, str]:
    meta, body = parse_policy_docx(data)
    if mode == "pdf":
        return meta, build_pdf_html(body, meta)
    return meta, wrap_with_policy_template(body, meta, mode=mode)


def next_version_number(policy_id: int | None) -> int:
    """``max(existing) + 1``, or 1 when the policy has no versions yet."""
    if policy_id is None:
        return 1
    session = get_session()
    try:
        return latest_version_number(session, policy_id) + 1
    finally:
        session.close()


def list_versions(policy_id: int) -> list[PolicyVersion]:
    session = get_session()
    try:
        if session.get(Policy, policy_id) is None:
            raise LookupError("policy not found")
        return (
            session.query(PolicyVersion)
            .filter_by(policy_id=policy_id)
            .order_by(PolicyVersion.version_number)
            .all()
        )
    finally:
        session.close()


def get_version(policy_id: int, version_number: int) -> PolicyVersion:
    session = get_session()
    try:
        version = (
            session.query(PolicyVersion)
            .filter_by(policy_id=policy_id, version_number=version_number)
            .first()
        )
        if version is None:
            raise LookupError("version not found")
        return version
    finally:
        session.close()


def _policy_title(meta: PolicyMeta, filename: str) -> str:
    stem = os.path.splitext(os.path.basename(filename or ""))[0]
    return (meta.subject or stem or "Untitled policy")[:TITLE_MAX_LENGTH]


def convert_and_upload(
    filename: str,
    data: bytes,
    policy_id: int | None = None,
    version_number: int | None = None,
    change_summary: str | None = None,
) -> dict:
    """Convert an uploaded ``.docx`` policy and store it as a new version.

    When ``policy_id`` is omitted a new policy is created from the parsed
    metadata.  An explicit ``version_number`` must exceed every stored
    version of the policy.  The policy moves to Published and points at the
    new version unless it is Archived, whose status is left alone.
    """
    if policy_id is not None:
        session = get_session()
        try:
            if session.get(Policy, policy_id) is None:
                raise LookupError("policy not found")
            current_max = latest_version_number(session, policy_id)
        finally:
            session.close()
    else:
        current_max = 0
    if version_number is None:
        version_number = current_max + 1
    elif int(version_number) <= current_max:
        raise ValueError(f"version number must be greater than {current_max}")
    version_number = int(version_number)

    meta, body = parse_policy_docx(data)
    html = build_pdf_html(body, meta)
    rendered = compose_policy_pdf(html, meta)
    if not rendered.pdf_bytes:
        raise ConversionError("decorate", "generated PDF is empty")

    pdf_name = make_pdf_name(filename, meta.number, meta.subject)

    session = get_session()
    try:
        if policy_id is None:
            policy = Policy(
                title=_policy_title(meta, filename),
                section=meta.section or None,
                number=meta.number or None,
                subject=meta.subject or None,
                status="Draft",
            )
            session.add(policy)
            session.flush()
        else:
            policy = session.get(Policy, policy_id)

        key = build_key("formatted", policy.id, pdf_name)
        try:
            storage_client.put(Key=key, Body=rendered.pdf_bytes, ContentType="application/pdf")
        except Exception as exc:
            logger.warning("uploading %s failed: %s", key, exc)
            raise ConversionError("upload", str(exc)) from exc

        now = datetime.utcnow()
        version = PolicyVersion(
            policy_id=policy.id,
            version_number=version_number,
            file_key=key,
            file_name=pdf_name,
            file_size=len(rendered.pdf_bytes),
            page_count=rendered.page_count,
            change_summary=change_summary,
            published_at=now,
        )
        session.add(version)
        session.flush()
        policy.current_version_id = version.id
        if can_transition(policy.status, "Published"):
            policy.status = "Published"
        if meta.section:
            policy.section = meta.section
        if meta.number:
            policy.number = meta.number
        if meta.subject:
            policy.subject = meta.subject
        try:
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.warning("storing version %s of policy %s failed: %s", version_number, policy.id, exc)
            raise ConversionError("persist", str(exc)) from exc
        result = version.to_dict()
        result["meta"] = meta.to_dict()
        result["status"] = policy.status
        logger.info("stored version %d of policy %d as %s", version_number, policy.id, key)
        return result
    except ConversionError:
        session.rollback()
        raise
    finally:
        session.close()


def load_version_pdf(policy_id: int, version_number: int) -> bytes:
    version = get_version(policy_id, version_number)
    return storage_client.read_bytes(version.file_key)


# -- briefs --------------------------------------------------------------------
def create_brief(title: str | None = None, content: str | None = None, date_label: str | None = None,
                 from_template: bool = True) -> Brief:
    if content is None and from_template:
        content = brief_template(date_label)
    session = get_session()
    try:
        brief = Brief(title=title or "Untitled brief", content=content or "")
        session.add(brief)
        session.commit()
        session.refresh(brief)
        return brief
    finally:
        session.close()


def get_brief(brief_id: int) -> Brief:
    session = get_session()
    try:
        brief = session.get(Brief, brief_id)
        if brief is None:
            raise LookupError("brief not found")
        return brief
    finally:
        session.close()


def save_brief(brief_id: int, title: str | None = None, content: str | None = None) -> Brief:
    session = get_session()
    try:
        brief = session.get(Brief, brief_id)
        if brief is None:
            raise LookupError("brief not found")
        if title is not None:
            brief.title = title
        if content is not None:
            brief.content = content
        session.commit()
        session.refresh(brief)
        return brief
    finally:
        session.close()


EXPORT_FORMATS = ("html", "docx", "pdf")


def export_brief(brief_id: int, fmt: str = "html", date_label: str | None = None) -> tuple[bytes, str, str]:
    """Return ``(data, mimetype, download_name)`` for a brief export."""
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"unknown export format: {fmt}")
    brief = get_brief(brief_id)
    base = os.path.splitext(docx_filename(brief.title))[0]
    if fmt == "html":
        html = generate_download_html(brief.title, brief.content)
        return html.encode("utf-8"), "text/html; charset=utf-8", f"{base}.html"
    if fmt == "docx":
        return html_to_docx(brief.content), DOCX_MIMETYPE, f"{base}.docx"
    rendered = rasterize(generate_brief_html(brief.title, brief.content, date_label))
    return rendered.pdf_bytes, "application/pdf", f"{base}.pdf"


# -- intake forms ----------------------------------------------------------------
def render_intake_form(form: dict | None) -> tuple[IntakeFormData, str]:
    data = IntakeFormData.from_dict(form or {})
    return data, generate_intake_form_html(data)


def create_intake_form(form: dict | None) -> IntakeForm:
    """Store an intake form with its generated HTML and ``.docx`` rendition."""
    data, html = render_intake_form(form)
    docx_bytes = html_to_docx(html)
    file_name = intake_form_filename(data.project_name)

    session = get_session()
    try:
        record = IntakeForm(
            project_name=data.project_name or "Untitled project",
            form_data=data.to_dict(),
            html_content=html,
        )
        session.add(record)
        session.flush()
        key = build_key("intake", record.id, storage_file_name(os.path.splitext(file_name)[0]))
        storage_client.put(Key=key, Body=docx_bytes, ContentType=DOCX_MIMETYPE)
        record.file_key = key
        record.file_name = file_name
        record.file_size = len(docx_bytes)
        session.commit()
        session.refresh(record)
        logger.info("stored intake form %d as %s", record.id, key)
        return record
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
