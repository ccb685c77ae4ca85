import io
import os
from datetime import datetime
from pathlib import Path

from flask import Flask, Response, jsonify, redirect, request, send_file
from flask_wtf.csrf import CSRFError, CSRFProtect, generate_csrf
from sqlalchemy.orm import sessionmaker

import services
from editor import EditorSession
from errors import ConversionError, PdfGenerationError
from models import AuditLog, engine
from page_template import MODES
from storage import generate_presigned_url
from text_extract import DOCX_MIMETYPE, is_docx_filename
from visual_diff import DiffOptions, compare_documents


# Automatically run database migrations in non-SQLite environments.
def _run_migrations() -> None:
    db_url = os.environ.get("DATABASE_URL", "")
    if db_url.startswith("sqlite"):
        return
    from alembic import command
    from alembic.config import Config

    repo_root = Path(__file__).resolve().parent.parent
    cfg = Config(str(repo_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(repo_root / "alembic"))
    command.upgrade(cfg, "head")


_run_migrations()

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
)

app.config["SESSION_COOKIE_SECURE"] = (
    os.environ.get("SESSION_COOKIE_SECURE", "true").lower() == "true"
)

# Uploads larger than this are rejected by Flask before any processing.
app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_UPLOAD_MB", "25")) * 1024 * 1024


@app.after_request
def set_security_headers(response):
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Frame-Options"] = "DENY"
    return response


CSRFProtect(app)


@app.errorhandler(413)
def handle_too_large(error):
    return jsonify(error="file too large"), 413


@app.errorhandler(CSRFError)
def handle_csrf_error(error):
    return jsonify(error=error.description), 400


def log_action(
    action,
    *,
    entity_type=None,
    entity_id=None,
    payload=None,
    endpoint=None,
    connection=None,
):
    """Persist an audit log entry."""
    if endpoint is None:
        try:
            endpoint = request.path
        except RuntimeError:
            endpoint = None

    data = {
        "action": action,
        "endpoint": endpoint,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "payload": payload,
        "at": datetime.utcnow(),
    }

    if connection is not None:
        connection.execute(AuditLog.__table__.insert(), [data])
    else:
        Session = sessionmaker(bind=engine)
        session = Session()
        try:
            session.execute(AuditLog.__table__.insert(), [data])
            session.commit()
        finally:
            session.close()


# Stages whose failure means the input could not be understood, versus
# stages that failed on our side or in a collaborator.
_INPUT_STAGES = {"parse", "normalize"}
_STORAGE_STAGES = {"upload", "persist"}


def _conversion_error(exc: ConversionError, entity_id=None):
    app.logger.warning("conversion failed at %s: %s", exc.stage, exc.message)
    log_action(
        "conversion_failed",
        entity_type="Policy",
        entity_id=entity_id,
        payload={"stage": exc.stage, "error": exc.message},
    )
    if exc.stage in _INPUT_STAGES:
        status = 422
    elif exc.stage in _STORAGE_STAGES:
        status = 502
    else:
        status = 500
    return jsonify(error=exc.message, stage=exc.stage), status


def _uploaded_docx():
    """Return ``(filename, bytes)`` of the uploaded ``.docx`` or an error response."""
    uploaded = request.files.get("file")
    if not uploaded or not uploaded.filename:
        return None, (jsonify(error="file required"), 400)
    if not is_docx_filename(uploaded.filename):
        return None, (jsonify(error="only .docx files are supported"), 400)
    return (uploaded.filename, uploaded.read()), None


def _int_arg(source, name, default=None):
    value = source.get(name)
    if value in (None, ""):
        return default
    return int(value)


@app.get("/health")
def health():
    return jsonify(status="ok")


@app.get("/api/csrf-token")
def csrf_token():
    """Token to send as the ``X-CSRFToken`` header on every POST and PUT."""
    return jsonify(csrf_token=generate_csrf())


# -- policies --------------------------------------------------------------------
@app.post("/api/policies/parse")
def parse_policy():
    upload, error = _uploaded_docx()
    if error:
        return error
    _, data = upload
    try:
        meta, html = services.parse_policy_docx(data)
    except ConversionError as exc:
        return _conversion_error(exc)
    return jsonify(meta=meta.to_dict(), html=html)


@app.post("/api/policies/preview")
def preview_policy():
    upload, error = _uploaded_docx()
    if error:
        return error
    mode = request.form.get("mode", "preview")
    if mode not in MODES:
        return jsonify(error="invalid mode"), 400
    _, data = upload
    try:
        _, html = services.render_preview(data, mode)
    except ConversionError as exc:
        return _conversion_error(exc)
    return Response(html, mimetype="text/html")


@app.post("/api/policies/upload")
def upload_policy():
    upload, error = _uploaded_docx()
    if error:
        return error
    filename, data = upload
    try:
        policy_id = _int_arg(request.form, "policy_id")
        version_number = _int_arg(request.form, "version_number")
    except ValueError:
        return jsonify(error="policy_id and version_number must be integers"), 400
    if version_number is not None and version_number < 1:
        return jsonify(error="invalid version number"), 400

    try:
        result = services.convert_and_upload(
            filename,
            data,
            policy_id=policy_id,
            version_number=version_number,
            change_summary=request.form.get("change_summary") or None,
        )
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    except ValueError as exc:
        return jsonify(error=str(exc)), 400
    except ConversionError as exc:
        return _conversion_error(exc, entity_id=policy_id)

    log_action(
        "policy_version_created",
        entity_type="Policy",
        entity_id=result["policy_id"],
        payload={
            "version_number": result["version_number"],
            "file_key": result["file_key"],
            "source_file": filename,
        },
    )
    result["url"] = generate_presigned_url(result["file_key"])
    return jsonify(result), 201


@app.get("/api/policies/<int:policy_id>/versions")
def policy_versions(policy_id: int):
    try:
        versions = services.list_versions(policy_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    return jsonify(
        versions=[v.to_dict() for v in versions],
        next_version_number=services.next_version_number(policy_id),
    )


@app.get("/api/policies/<int:policy_id>/compare")
def compare_policy_versions(policy_id: int):
    """Visual diff of two stored versions as JSON blocks or an overlay PNG."""
    try:
        versions = services.list_versions(policy_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    if len(versions) < 2 and not (request.args.get("from") and request.args.get("to")):
        return jsonify(error="at least two versions are required"), 400

    try:
        known = sorted(v.version_number for v in versions)
        new_number = _int_arg(request.args, "to", known[-1] if known else None)
        earlier = [n for n in known if new_number is not None and n < new_number]
        old_number = _int_arg(request.args, "from", earlier[-1] if earlier else None)
        page = _int_arg(request.args, "page", 1)
        options = DiffOptions(
            block_size=_int_arg(request.args, "block_size", DiffOptions().block_size),
            threshold=float(request.args.get("threshold", DiffOptions().threshold)),
        ).validate()
    except (TypeError, ValueError):
        return jsonify(error="invalid comparison parameters"), 400

    if old_number not in known or new_number not in known:
        return jsonify(error="version not found"), 404

    try:
        comparison = compare_documents(
            lambda: services.load_version_pdf(policy_id, old_number),
            lambda: services.load_version_pdf(policy_id, new_number),
            page=page,
            options=options,
        )
    except Exception as exc:
        app.logger.warning("comparing policy %s versions failed: %s", policy_id, exc)
        return jsonify(error="comparison failed"), 502

    if request.args.get("format") == "png":
        return Response(comparison.to_png(), mimetype="image/png")
    data = comparison.to_dict()
    data.update({"from": old_number, "to": new_number})
    return jsonify(data)


@app.get("/files/<path:key>")
def file_redirect(key: str):
    try:
        url = generate_presigned_url(key)
    except ValueError:
        return jsonify(error="invalid key"), 400
    if not url:
        return jsonify(error="file not found"), 404
    return redirect(url)


# -- briefs ----------------------------------------------------------------------
def _brief_json(brief):
    return {"id": brief.id, "title": brief.title, "content": brief.content}


def _editor_for(brief_id: int):
    brief = services.get_brief(brief_id)
    return EditorSession(brief.content, title=brief.title)


def _save_editor(brief_id: int, editor: EditorSession):
    if editor.should_autosave():
        services.save_brief(brief_id, title=editor.title, content=editor.html)


@app.post("/api/briefs")
def create_brief():
    data = request.get_json(silent=True) or {}
    brief = services.create_brief(
        title=data.get("title"),
        content=data.get("content"),
        date_label=data.get("date_label"),
        from_template=data.get("template", True),
    )
    log_action("brief_created", entity_type="Brief", entity_id=brief.id)
    return jsonify(_brief_json(brief)), 201


@app.get("/api/briefs/<int:brief_id>")
def get_brief(brief_id: int):
    try:
        brief = services.get_brief(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    return jsonify(_brief_json(brief))


@app.put("/api/briefs/<int:brief_id>")
def save_brief(brief_id: int):
    data = request.get_json(silent=True) or {}
    if "content" not in data and "title" not in data:
        return jsonify(error="title or content required"), 400
    try:
        editor = _editor_for(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    if data.get("title"):
        editor.title = data["title"]
    if "content" in data:
        editor.sync(data.get("content") or "")
    brief = services.save_brief(
        brief_id,
        title=editor.title,
        content=editor.html if editor.should_autosave() else None,
    )
    return jsonify(_brief_json(brief))


@app.post("/api/briefs/<int:brief_id>/commands")
def brief_command(brief_id: int):
    data = request.get_json(silent=True) or {}
    command = data.get("command")
    if not command:
        return jsonify(error="command required"), 400
    try:
        editor = _editor_for(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    changed = editor.apply_command(command, data.get("value"), data.get("target"))
    if changed:
        _save_editor(brief_id, editor)
    return jsonify(changed=changed, content=editor.html)


@app.post("/api/briefs/<int:brief_id>/tables")
def brief_insert_table(brief_id: int):
    data = request.get_json(silent=True) or {}
    try:
        editor = _editor_for(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    try:
        editor.insert_table(
            data.get("template", "grid"),
            rows=data.get("rows"),
            cols=data.get("cols"),
            has_header=data.get("has_header", True),
            target=data.get("target"),
        )
    except (TypeError, ValueError) as exc:
        return jsonify(error=str(exc)), 400
    _save_editor(brief_id, editor)
    return jsonify(content=editor.html, row_anchors=[a.to_dict() for a in editor.row_anchors()])


@app.get("/api/briefs/<int:brief_id>/row-anchors")
def brief_row_anchors(brief_id: int):
    try:
        editor = _editor_for(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    return jsonify(row_anchors=[a.to_dict() for a in editor.row_anchors()])


@app.post("/api/briefs/<int:brief_id>/tables/<int:table_index>/rows")
def brief_append_row(brief_id: int, table_index: int):
    try:
        editor = _editor_for(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    if not editor.append_row(table_index):
        return jsonify(error="table not found"), 404
    _save_editor(brief_id, editor)
    return jsonify(content=editor.html)


@app.post("/api/briefs/<int:brief_id>/import")
def brief_import(brief_id: int):
    try:
        editor = _editor_for(brief_id)
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    uploaded = request.files.get("file")
    if uploaded and uploaded.filename:
        name = uploaded.filename.lower()
        if is_docx_filename(name):
            try:
                editor.import_docx(uploaded.read(), uploaded.filename)
            except Exception as exc:
                app.logger.warning("importing %s failed: %s", uploaded.filename, exc)
                return jsonify(error="could not read document"), 422
        elif name.endswith((".html", ".htm")):
            editor.import_document(uploaded.read().decode("utf-8", errors="replace"))
        else:
            return jsonify(error="only .docx or .html files are supported"), 400
    else:
        data = request.get_json(silent=True) or {}
        if not data.get("html"):
            return jsonify(error="file or html required"), 400
        editor.import_document(data["html"], title=data.get("title"))
    _save_editor(brief_id, editor)
    log_action("brief_imported", entity_type="Brief", entity_id=brief_id)
    return jsonify(id=brief_id, title=editor.title, content=editor.html)


@app.get("/api/briefs/<int:brief_id>/export")
def brief_export(brief_id: int):
    fmt = request.args.get("format", "html")
    if fmt not in services.EXPORT_FORMATS:
        return jsonify(error="format must be html, docx or pdf"), 400
    try:
        data, mimetype, name = services.export_brief(brief_id, fmt, request.args.get("date_label"))
    except LookupError as exc:
        return jsonify(error=str(exc)), 404
    except PdfGenerationError as exc:
        app.logger.warning("brief %s pdf export failed: %s", brief_id, exc)
        return jsonify(error=exc.message, stage=exc.stage), 500
    return send_file(io.BytesIO(data), mimetype=mimetype, as_attachment=True, download_name=name)


# -- intake forms ----------------------------------------------------------------
@app.post("/api/intake-forms")
def create_intake_form():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="form data required"), 400
    try:
        record = services.create_intake_form(data)
    except ValueError as exc:
        return jsonify(error=str(exc)), 400
    except Exception as exc:
        app.logger.warning("storing intake form failed: %s", exc)
        return jsonify(error="could not store intake form"), 502
    log_action("intake_form_created", entity_type="IntakeForm", entity_id=record.id)
    return (
        jsonify(
            id=record.id,
            project_name=record.project_name,
            file_key=record.file_key,
            file_name=record.file_name,
            file_size=record.file_size,
            html=record.html_content,
        ),
        201,
    )


@app.post("/api/intake-forms/render")
def render_intake_form():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="form data required"), 400
    try:
        _, html = services.render_intake_form(data)
    except ValueError as exc:
        return jsonify(error=str(exc)), 400
    return Response(html, mimetype="text/html")


@app.post("/api/intake-forms/docx")
def intake_form_docx():
    from assembly import intake_form_filename
    from docx_export import html_to_docx

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify(error="form data required"), 400
    try:
        form, html = services.render_intake_form(data)
    except ValueError as exc:
        return jsonify(error=str(exc)), 400
    return send_file(
        io.BytesIO(html_to_docx(html)),
        mimetype=DOCX_MIMETYPE,
        as_attachment=True,
        download_name=intake_form_filename(form.project_name),
    )


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")))
