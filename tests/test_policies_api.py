import io
import importlib
from unittest.mock import MagicMock

import pytest

from conftest import make_docx, make_pdf


POLICY_PARAGRAPHS = [
    "Public Safety and Emergency Services",
    "SECTION: Community Corrections",
    "NUMBER: CC-4.2",
    "SUBJECT: Curfew Checks",
    "POLICY STATEMENT:",
    "Staff must record every curfew check.",
]


@pytest.fixture()
def app_module(monkeypatch):
    compositor = importlib.import_module("compositor")
    monkeypatch.setattr(
        compositor,
        "rasterize",
        MagicMock(side_effect=lambda html: compositor.RenderedPdf(make_pdf("Body"), 1)),
    )
    app_module = importlib.reload(importlib.import_module("app"))
    app_module.app.config["WTF_CSRF_ENABLED"] = False
    return app_module


@pytest.fixture()
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture()
def models():
    return importlib.import_module("models")


def _upload(client, data=None, filename="legacy.docx", **fields):
    payload = {"file": (io.BytesIO(data or make_docx(POLICY_PARAGRAPHS)), filename)}
    payload.update({k: str(v) for k, v in fields.items()})
    return client.post("/api/policies/upload", data=payload, content_type="multipart/form-data")


def _versions(models):
    session = models.SessionLocal()
    try:
        return [(v.policy_id, v.version_number) for v in session.query(models.PolicyVersion).all()]
    finally:
        session.close()


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


def test_upload_creates_policy_and_first_version(client, models):
    resp = _upload(client)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["version_number"] == 1
    assert body["file_name"] == "CC-4.2_Curfew_Checks.pdf"
    assert body["file_key"].startswith(f"formatted/{body['policy_id']}/")
    assert body["meta"] == {"section": "Community Corrections", "number": "CC-4.2", "subject": "Curfew Checks"}

    storage = importlib.import_module("storage")
    assert storage.storage_client.read_bytes(body["file_key"]).startswith(b"%PDF")

    session = models.SessionLocal()
    policy = session.get(models.Policy, body["policy_id"])
    assert policy.title == "Curfew Checks"
    assert policy.status == "Published"
    assert policy.current_version_id == body["id"]
    session.close()

    logs = models.SessionLocal().query(models.AuditLog).filter_by(action="policy_version_created").all()
    assert len(logs) == 1


def test_versions_increment(client, models):
    policy_id = _upload(client).get_json()["policy_id"]
    second = _upload(client, policy_id=policy_id, change_summary="Clarified wording")
    assert second.status_code == 201
    assert second.get_json()["version_number"] == 2

    listing = client.get(f"/api/policies/{policy_id}/versions").get_json()
    assert [v["version_number"] for v in listing["versions"]] == [1, 2]
    assert listing["versions"][1]["change_summary"] == "Clarified wording"
    assert listing["next_version_number"] == 3


def test_fourth_upload_follows_three_versions(client, models):
    services = importlib.import_module("services")
    policy_id = _upload(client).get_json()["policy_id"]
    for _ in range(2):
        assert _upload(client, policy_id=policy_id).status_code == 201
    assert [n for _, n in _versions(models)] == [1, 2, 3]
    assert services.next_version_number(policy_id) == 4

    fourth = _upload(client, policy_id=policy_id)
    assert fourth.status_code == 201
    assert fourth.get_json()["version_number"] == 4


def test_explicit_version_number_must_exceed_current(client):
    policy_id = _upload(client).get_json()["policy_id"]
    assert _upload(client, policy_id=policy_id, version_number=1).status_code == 400
    resp = _upload(client, policy_id=policy_id, version_number=4)
    assert resp.status_code == 201
    assert resp.get_json()["version_number"] == 4
    listing = client.get(f"/api/policies/{policy_id}/versions").get_json()
    assert listing["next_version_number"] == 5


def test_non_docx_is_rejected_before_processing(client, models):
    compositor = importlib.import_module("compositor")
    resp = _upload(client, data=b"%PDF-1.4", filename="policy.pdf")
    assert resp.status_code == 400
    assert "docx" in resp.get_json()["error"]
    compositor.rasterize.assert_not_called()
    assert _versions(models) == []


def test_corrupt_docx_fails_at_parse_stage(client, models):
    resp = _upload(client, data=b"%PDF-1.4 renamed", filename="policy.docx")
    assert resp.status_code == 422
    assert resp.get_json()["stage"] == "parse"
    assert _versions(models) == []


def test_missing_file(client):
    resp = client.post("/api/policies/upload", data={}, content_type="multipart/form-data")
    assert resp.status_code == 400


def test_unknown_policy(client):
    assert _upload(client, policy_id=999).status_code == 404
    assert client.get("/api/policies/999/versions").status_code == 404


def test_render_failure_persists_nothing(client, models, monkeypatch):
    compositor = importlib.import_module("compositor")
    errors = importlib.import_module("errors")
    monkeypatch.setattr(
        compositor, "rasterize", MagicMock(side_effect=errors.PdfGenerationError("rasterize", "no fonts"))
    )
    resp = _upload(client)
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "no fonts", "stage": "rasterize"}
    assert _versions(models) == []
    session = models.SessionLocal()
    assert session.query(models.Policy).count() == 0
    log = session.query(models.AuditLog).filter_by(action="conversion_failed").one()
    assert log.payload["stage"] == "rasterize"
    session.close()


def test_storage_failure_returns_502(client, models, monkeypatch):
    services = importlib.import_module("services")
    monkeypatch.setattr(services.storage_client, "put", MagicMock(side_effect=OSError("disk full")))
    resp = _upload(client)
    assert resp.status_code == 502
    assert resp.get_json()["stage"] == "upload"
    assert _versions(models) == []


def test_archived_policy_keeps_status(client, models):
    session = models.SessionLocal()
    policy = models.Policy(title="Old", status="Archived")
    session.add(policy)
    session.commit()
    policy_id = policy.id
    session.close()

    resp = _upload(client, policy_id=policy_id)
    assert resp.status_code == 201
    session = models.SessionLocal()
    policy = session.get(models.Policy, policy_id)
    assert policy.status == "Archived"
    assert policy.current_version_id == resp.get_json()["id"]
    session.close()


def test_parse_returns_meta_and_clean_html(client):
    resp = client.post(
        "/api/policies/parse",
        data={"file": (io.BytesIO(make_docx(POLICY_PARAGRAPHS)), "p.docx")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["meta"]["number"] == "CC-4.2"
    assert "<h2>Policy Statement</h2>" in body["html"]
    assert "Public Safety and Emergency Services" not in body["html"]


def test_preview_modes(client):
    def post(mode):
        return client.post(
            "/api/policies/preview",
            data={"file": (io.BytesIO(make_docx(POLICY_PARAGRAPHS)), "p.docx"), "mode": mode},
            content_type="multipart/form-data",
        )

    preview = post("preview")
    assert preview.status_code == 200
    assert preview.mimetype == "text/html"
    assert 'class="header-table"' in preview.get_data(as_text=True)
    assert "@page" in post("pdf").get_data(as_text=True)
    assert post("print").status_code == 400


def _store_versions(models, pdfs, numbers=None):
    storage = importlib.import_module("storage")
    session = models.SessionLocal()
    policy = models.Policy(title="Compared", status="Published")
    session.add(policy)
    session.flush()
    for number, pdf in zip(numbers or range(1, len(pdfs) + 1), pdfs):
        key = storage.build_key("formatted", policy.id, f"v{number}.pdf")
        storage.storage_client.put(Key=key, Body=pdf)
        session.add(models.PolicyVersion(policy_id=policy.id, version_number=number,
                                         file_key=key, file_name=f"v{number}.pdf"))
    session.commit()
    policy_id = policy.id
    session.close()
    return policy_id


def test_compare_versions(client, models):
    policy_id = _store_versions(models, [make_pdf(), make_pdf(square=(100, 100, 60))])
    resp = client.get(f"/api/policies/{policy_id}/compare")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["from"] == 1 and body["to"] == 2
    assert body["changed_blocks"] > 0
    assert body["matched_pages"] == 1

    png = client.get(f"/api/policies/{policy_id}/compare?from=1&to=2&format=png")
    assert png.mimetype == "image/png"
    assert png.data.startswith(b"\x89PNG")


def test_compare_errors(client, models):
    single = _store_versions(models, [make_pdf()])
    assert client.get(f"/api/policies/{single}/compare").status_code == 400
    pair = _store_versions(models, [make_pdf(), make_pdf()])
    assert client.get(f"/api/policies/{pair}/compare?from=1&to=7").status_code == 404
    assert client.get(f"/api/policies/{pair}/compare?block_size=0").status_code == 400


def test_compare_defaults_skip_version_gaps(client, models):
    policy_id = _store_versions(models, [make_pdf(), make_pdf(square=(100, 100, 60))], numbers=[1, 3])
    resp = client.get(f"/api/policies/{policy_id}/compare")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["from"] == 1 and body["to"] == 3
    assert body["changed_blocks"] > 0
    assert client.get(f"/api/policies/{policy_id}/compare?to=1").status_code == 404


def test_files_route_redirects_to_signed_url(client):
    storage = importlib.import_module("storage")
    storage.storage_client.put(Key="formatted/1/x.pdf", Body=b"%PDF")
    resp = client.get("/files/formatted/1/x.pdf")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/formatted/1/x.pdf")
    assert client.get("/files/formatted/1/missing.pdf").status_code == 404


@pytest.mark.parametrize(
    "old,new,allowed",
    [
        (None, "Draft", True),
        ("Draft", "Published", True),
        ("Review", "Published", True),
        ("Published", "Published", True),
        ("Published", "Draft", False),
        ("Archived", "Published", False),
        ("Draft", "Draft", False),
        ("Draft", "Deleted", False),
    ],
)
def test_status_transitions(models, old, new, allowed):
    assert models.can_transition(old, new) is allowed
