import os
from pathlib import Path

from flask import Flask, jsonify, request, session
from flask_wtf.csrf import CSRFProtect

from audit import log_action
from auth import current_user_id, login_required, roles_required
from errors import Forbidden, WorkflowError
from models import RoleEnum
from services import DocumentWorkflow


# Automatically run database migrations in non-SQLite environments.
def _run_migrations() -> None:
    db_url = os.environ.get("DATABASE_URL", "")
    if not db_url or db_url.startswith("sqlite"):
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
    # base64 PDFs and stamps travel in the JSON body
    MAX_CONTENT_LENGTH=int(os.environ.get("MAX_CONTENT_LENGTH", str(16 * 1024 * 1024))),
)
app.config["SESSION_COOKIE_SECURE"] = (
    os.environ.get("SESSION_COOKIE_SECURE", "true").lower() == "true"
)

CSRFProtect(app)

workflow = DocumentWorkflow()


@app.after_request
def set_security_headers(response):
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.errorhandler(WorkflowError)
def handle_workflow_error(error):
    if isinstance(error, Forbidden):
        app.logger.warning(
            "403 Forbidden: path=%s user=%s roles=%s reason=%s",
            request.path,
            session.get("user"),
            session.get("roles"),
            error.message,
        )
        user_id = current_user_id()
        if user_id:
            doc_id = (request.view_args or {}).get("doc_id")
            log_action(user_id, doc_id, f"{request.endpoint}_forbidden", request.path)
    elif error.status_code >= 500:
        app.logger.error("%s failed: %s", request.path, error.message)
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(403)
def handle_forbidden(error):
    app.logger.warning(
        "403 Forbidden: path=%s user=%s roles=%s reason=%s",
        request.path,
        session.get("user"),
        session.get("roles"),
        getattr(error, "description", ""),
    )
    return jsonify(error="Forbidden", code="forbidden"), 403


@app.errorhandler(413)
def handle_too_large(error):
    return jsonify(error="Request body too large", code="validation_error"), 413


def _payload() -> dict:
    return request.get_json(silent=True) or {}


@app.get("/health")
def health():
    return jsonify(status="ok")


@app.get("/api/documents/<int:doc_id>")
@login_required
def api_document_summary(doc_id: int):
    return jsonify(workflow.document_summary(doc_id))


@app.get("/api/documents/<int:doc_id>/revisions")
@login_required
def api_revision_history(doc_id: int):
    history = workflow.revision_history(doc_id)
    for entry in history:
        entry["snapshot"] = entry["snapshot"].to_dict()
    return jsonify(revisions=history)


@app.post("/api/documents/<int:doc_id>/approvals/<int:approval_id>/sign")
@login_required
def api_sign(doc_id: int, approval_id: int):
    data = _payload()
    result = workflow.sign(doc_id, approval_id, current_user_id(), data.get("signature"))
    return jsonify(result.to_dict())


@app.post("/api/documents/<int:doc_id>/approvals/<int:approval_id>/request-revision")
@login_required
def api_request_revision(doc_id: int, approval_id: int):
    data = _payload()
    result = workflow.request_revision(doc_id, approval_id, current_user_id(), data.get("reason"))
    return jsonify(result.to_dict()), 201


@app.post("/api/documents/<int:doc_id>/submit")
@login_required
def api_submit(doc_id: int):
    data = _payload()
    result = workflow.submit(
        doc_id,
        current_user_id(),
        data.get("approvers") or [],
        signature=data.get("signature"),
    )
    return jsonify(result.to_dict())


@app.post("/api/documents/<int:doc_id>/resubmit")
@login_required
def api_resubmit(doc_id: int):
    return jsonify(workflow.resubmit(doc_id, current_user_id()).to_dict())


@app.post("/api/documents/<int:doc_id>/send-to-validation")
@roles_required(RoleEnum.ADMIN.value)
def api_send_to_validation(doc_id: int):
    return jsonify(workflow.send_to_validation(doc_id, current_user_id()).to_dict())


@app.post("/api/documents/<int:doc_id>/validate")
@roles_required(RoleEnum.ADMIN.value)
def api_admin_validate(doc_id: int):
    data = _payload()
    result = workflow.admin_validate(
        doc_id, current_user_id(), data.get("action"), data.get("comments")
    )
    return jsonify(result.to_dict())


@app.post("/api/documents/<int:doc_id>/finalize")
@roles_required(RoleEnum.ADMIN.value)
def api_finalize(doc_id: int):
    data = _payload()
    result = workflow.finalize(
        doc_id,
        current_user_id(),
        data.get("category"),
        data.get("company_stamp"),
        data.get("final_pdf"),
    )
    return jsonify(result.to_dict())


@app.post("/api/documents/<int:doc_id>/distribute")
@roles_required(RoleEnum.ADMIN.value)
def api_distribute(doc_id: int):
    return jsonify(workflow.distribute(doc_id, current_user_id()).to_dict())


@app.post("/api/documents/<int:doc_id>/obsolete")
@roles_required(RoleEnum.ADMIN.value)
def api_mark_obsolete(doc_id: int):
    return jsonify(workflow.mark_obsolete(doc_id, current_user_id()).to_dict())


if __name__ == "__main__":
    bind = os.environ.get("BIND", "0.0.0.0:5000")
    host, port = bind.split(":")
    debug = os.environ.get("DEBUG", "").lower() in {"1", "true", "yes"}
    app.run(host=host, port=int(port), debug=debug)
