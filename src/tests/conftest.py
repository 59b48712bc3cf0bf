"""
Shared fixtures for unit and integration tests.
"""

import datetime
import os
import sys

import pytest

# ── Ensure backend modules are importable ──
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(ROOT, "backend"))

# ── Fake .env values used by every test ──
ENV_DEFAULTS = {
    "OLLAMA_MODEL": "deepseek-r1",
    "OLLAMA_BASE_URL": "http://127.0.0.1:11434",
    "OLLAMA_TIMEOUT": "600",
    "OLLAMA_TEMPERATURE": "0.0",
    "OLLAMA_TOP_P": "1.0",
    "OLLAMA_SEED": "42",
    "ORACLE_MAX_OUTPUT_TOKENS": "4000",
    "STORE_MAX_ATTEMPTS": "3",
    "STORE_BACKOFF_BASE": "0",
    "STORE_BACKOFF_FACTOR": "2.0",
    "PROGRESS_INTERIM_LIMIT": "100",
    "EVIDENCE_TEXT_MAX_CHARS": "1500",
    "LOW_CONFIDENCE_THRESHOLD": "70",
    "DEFAULT_ORGANIZATION_ID": "1",
    "API_PORT": "8000",
    "CORS_ORIGINS": "*",
    "LOG_LEVEL": "INFO",
}
for _k, _v in ENV_DEFAULTS.items():
    os.environ.setdefault(_k, _v)


@pytest.fixture(autouse=True)
def mock_env(monkeypatch):
    """Inject all required env vars so modules never blow up on import."""
    for k, v in ENV_DEFAULTS.items():
        monkeypatch.setenv(k, v)


# ── Database ──
@pytest.fixture
def engine(tmp_path):
    from evidence_analyzer.database import build_engine, init_db

    eng = build_engine(f"sqlite:///{tmp_path / 'evidence.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    from evidence_analyzer.database import build_session_factory

    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    """RetryableStore without backoff delays."""
    from evidence_analyzer.store import RetryableStore

    return RetryableStore(session_factory, max_attempts=3, base_delay=0, factor=2)


# ── Seed data ──
ACCESS_POLICY_MFA = (
    "All user access to production systems requires multi-factor authentication "
    "and quarterly access reviews."
)
ACCESS_POLICY_PASSWORDS = "Passwords must be at least 12 characters long and are stored with salted hashing."
BACKUP_PROCEDURE = (
    "Nightly encrypted backups are retained for 30 days.\n"
    "Restore tests are performed twice a year by the infrastructure team."
)


@pytest.fixture
def seeded(session_factory):
    """
    One ISO 27001 framework with three controls and two processed documents
    for organization 1. Organization 2 has a single unprocessed document.
    """
    from evidence_analyzer import tables

    now = datetime.datetime.now(datetime.timezone.utc)
    with session_factory() as s, s.begin():
        fw = tables.Framework(name="ISO/IEC 27001:2022", version="2022", family="iso27001")
        fw.controls = [
            tables.Control(control_id="A.5.15", title="Access control",
                           requirement_text="Rules to control access to information shall be established.",
                           category="Organizational"),
            tables.Control(control_id="A.8.13", title="Information backup",
                           requirement_text="Backup copies shall be maintained and regularly tested.",
                           category="Technological"),
            tables.Control(control_id="A.5.24", title="Incident management planning",
                           requirement_text="Incident management processes shall be planned and prepared.",
                           category="Organizational"),
        ]
        policy = tables.Document(organization_id=1, display_name="Access Control Policy.pdf", processed_at=now)
        policy.chunks = [
            tables.ClassifiedChunk(chunk_index=0, page_number=2, topic="Access Reviews",
                                   category="access_control", relevance_score=95, text=ACCESS_POLICY_MFA),
            tables.ClassifiedChunk(chunk_index=1, page_number=3, topic="Password Standards",
                                   category="access_control", relevance_score=80, text=ACCESS_POLICY_PASSWORDS),
        ]
        backups = tables.Document(organization_id=1, display_name="Backup Procedure.pdf", processed_at=now)
        backups.chunks = [
            tables.ClassifiedChunk(chunk_index=0, page_number=1, topic="Backups",
                                   category="business_continuity", relevance_score=90, text=BACKUP_PROCEDURE),
        ]
        draft = tables.Document(organization_id=2, display_name="Draft.pdf", processed_at=None)
        s.add_all([fw, policy, backups, draft])
        s.flush()
        ids = {
            "framework_id": fw.id,
            "policy_id": policy.id,
            "backups_id": backups.id,
            "draft_id": draft.id,
            "controls": {c.control_id: c.id for c in fw.controls},
        }
    return ids


# ── Oracle ──
def verdict_json(status, confidence, reasoning="Reasoning from the model.", evidence=None):
    import orjson

    return orjson.dumps({
        "status": status,
        "confidenceScore": confidence,
        "reasoning": reasoning,
        "evidenceItems": evidence or [],
    }).decode()


class FakeOracle:
    """Scripted stand-in for OllamaClient: one response (or exception) per control id."""

    model = "deepseek-r1"

    def __init__(self, responses=None, default=None):
        self.responses = responses or {}
        self.default = default if default is not None else verdict_json("missing", 0, "No evidence found.")
        self.calls = []

    def generate(self, prompt, model_id=None, max_output_tokens=None):
        self.calls.append({"prompt": prompt, "model_id": model_id, "max_output_tokens": max_output_tokens})
        for control_id, response in self.responses.items():
            if f"Identifier: {control_id}\n" in prompt:
                if isinstance(response, Exception):
                    raise response
                return response
        return self.default


@pytest.fixture
def scripted_oracle():
    """Compliant for access control, partial for backups, nothing for incidents."""
    return FakeOracle({
        "A.5.15": verdict_json("compliant", 90, "MFA and quarterly reviews are documented.", [
            {"evidenceText": ACCESS_POLICY_MFA, "documentName": "Access Control Policy.pdf",
             "pageNumber": 2, "confidence": 92, "relevanceScore": 95},
        ]),
        "A.8.13": verdict_json("partial", 55, "Backups exist but test results are not recorded.", [
            {"evidenceText": "Nightly encrypted backups are retained for 30 days.",
             "confidence": 70, "relevanceScore": 80},
        ]),
        "A.5.24": verdict_json("missing", 0, "No incident management content."),
    })
