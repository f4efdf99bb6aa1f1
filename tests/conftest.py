"""
Pytest Configuration for the PCM Advisor

Mock tests (fast, CI/CD) + real protocol API tests (opt-in)

Usage:
    # Run only fast unit tests (default)
    pytest tests/

    # Run integration tests against a real protocol API
    pytest tests/ --live

Environment Variables (for integration tests):
    PROTOCOL_API_URL   - PostgREST-style protocol API base URL
    PROTOCOL_API_KEY   - API key for the protocol API
"""

import json
import os
import sys
from datetime import date, timedelta

import pytest

# Add project root for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def pytest_addoption(parser):
    """Add command-line options for integration testing."""
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run integration tests against a real protocol API"
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests with mocks")
    config.addinivalue_line("markers", "integration: Real protocol API integration tests")
    config.addinivalue_line("markers", "slow: Tests taking > 5 seconds")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --live flag is provided."""
    if config.getoption("--live"):
        return
    skip_integration = pytest.mark.skip(reason="Integration test - use --live to run")
    for item in items:
        if "integration" in [m.name for m in item.iter_markers()]:
            item.add_marker(skip_integration)


# ═══════════════════════════════════════════════════════════════════════════
# ENVIRONMENT FIXTURES
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def protocol_api_url():
    """Get protocol API URL from environment."""
    url = os.environ.get("PROTOCOL_API_URL")
    if not url:
        pytest.skip("PROTOCOL_API_URL not set")
    return url


# ═══════════════════════════════════════════════════════════════════════════
# CORPUS / METADATA FIXTURES
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def sample_documents():
    """Small protocol-manual corpus."""
    return [
        {
            "id": "tp-1210",
            "title": "TP 1210 Cardiac Arrest",
            "category": "markdown",
            "subcategory": "LA County EMS",
            "keywords": ["cardiac arrest", "cpr", "pulseless"],
            "content": "Begin CPR. Epinephrine 1 mg IV every 5 minutes. Contact Base Hospital "
                       "for termination of resuscitation.",
        },
        {
            "id": "tp-1237",
            "title": "TP 1237 Respiratory Distress",
            "category": "markdown",
            "subcategory": "LA County EMS",
            "keywords": ["shortness of breath", "dyspnea", "wheezing"],
            "content": "Assess for dyspnea and shortness of breath. Albuterol 5 mg NEB for bronchospasm. "
                       "CPAP for severe respiratory distress.",
        },
        {
            "id": "tp-1231",
            "title": "TP 1231 Seizure",
            "category": "markdown",
            "subcategory": "LA County EMS",
            "keywords": ["seizure", "status epilepticus"],
            "content": "Protect the patient from injury. Midazolam 10 mg IM for active seizure.",
        },
        {
            "id": "mcg-1309",
            "title": "MCG 1309 Color Code Drug Doses",
            "category": "pdf",
            "subcategory": "LA County EMS",
            "keywords": ["pediatric", "color code", "weight based"],
            "content": "Pediatric doses are weight based. Use the length-based tape.",
        },
        {
            "id": "web-supply",
            "title": "Ambulance Supply Checklist",
            "category": "website",
            "subcategory": "Operations",
            "keywords": ["supplies"],
            "content": "Restock oxygen cylinders and airway supplies after each call.",
        },
    ]


@pytest.fixture
def corpus_file(tmp_path, sample_documents):
    """Knowledge base JSON file in tmp_path."""
    path = tmp_path / "knowledge_base.json"
    path.write_text(json.dumps(sample_documents), encoding="utf-8")
    return path


@pytest.fixture
def sample_metadata():
    return [
        {
            "id": "tp-1210",
            "title": "TP 1210 Cardiac Arrest",
            "category": "Cardiac",
            "protocol_codes": ["1210"],
            "base_contact": {"required": True, "criteria": "Termination of resuscitation"},
            "positioning": {"position": "Supine on a firm surface"},
            "transport": [],
            "warnings": ["Minimize interruptions in chest compressions"],
            "contraindications": [],
        },
        {
            "id": "tp-1237",
            "title": "TP 1237 Respiratory Distress",
            "category": "Respiratory",
            "protocol_codes": ["1237"],
            "base_contact": {"required": False},
            "positioning": {"position": "Position of comfort", "context": "usually sitting upright"},
            "transport": [],
            "warnings": [],
            "contraindications": ["CPAP in patients unable to protect their airway"],
        },
    ]


@pytest.fixture
def metadata_file(tmp_path, sample_metadata):
    """Protocol metadata JSON file in tmp_path."""
    path = tmp_path / "protocol_metadata.json"
    path.write_text(json.dumps(sample_metadata), encoding="utf-8")
    return path


@pytest.fixture
def knowledge_base(corpus_file):
    """Uninitialized knowledge base over the sample corpus (pcm scope)."""
    from pcm_advisor.corpus import CorpusStore
    from pcm_advisor.search_index import KnowledgeBase

    return KnowledgeBase(CorpusStore(corpus_file, scope="pcm"))


@pytest.fixture
def metadata_store(metadata_file):
    from pcm_advisor.metadata_store import MetadataStore

    return MetadataStore(metadata_file)


@pytest.fixture
def packaged_knowledge_base():
    """Knowledge base over the corpus shipped with the package (pcm scope)."""
    from pcm_advisor.config import DATA_DIR
    from pcm_advisor.corpus import CorpusStore
    from pcm_advisor.search_index import KnowledgeBase

    return KnowledgeBase(CorpusStore(DATA_DIR / "knowledge_base.json", scope="pcm"))


@pytest.fixture
def packaged_metadata_store():
    from pcm_advisor.config import DATA_DIR
    from pcm_advisor.metadata_store import MetadataStore

    return MetadataStore(DATA_DIR / "protocol_metadata.json")


# ═══════════════════════════════════════════════════════════════════════════
# PROTOCOL FIXTURES
# ═══════════════════════════════════════════════════════════════════════════

PROTOCOL_TEXT = (
    "Assess airway, breathing and circulation. Treat per protocol, reassess vital signs "
    "every five minutes and transport to the most appropriate receiving facility."
)


@pytest.fixture
def make_protocol():
    """Factory for Protocol records with sensible defaults."""
    from pcm_advisor.models import Protocol

    def _make(tp_code="1210", **overrides):
        values = {
            "tp_code": tp_code,
            "name": f"Protocol {tp_code}",
            "category": "Medical",
            "effective_date": date.today() - timedelta(days=30),
            "full_text": PROTOCOL_TEXT,
        }
        values.update(overrides)
        return Protocol(**values)

    return _make
