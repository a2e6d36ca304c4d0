"""
Shared fixtures for the course mapping test suite.

Provides:
- A small master catalog and its index
- A fixed clock
- Credential stores and allocators built on that clock
- FakeGeminiClient, a scripted stand-in for the HTTP client
"""
import json
from datetime import datetime, timezone

import pytest

from harvester.course_mapping.config import Config
from harvester.course_mapping.index import build_index
from harvester.course_mapping.inference import InferenceReply
from harvester.course_mapping.models import MasterCourseRecord, NormalizedRecord
from harvester.course_mapping.quota import InMemoryCredentialStore, QuotaAllocator, make_credential


FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return FIXED_NOW


CATALOG = [
    MasterCourseRecord("2000310", "Biology 1", "Science", frozenset({"Biology I"})),
    MasterCourseRecord("2000320", "Biology 1 Honors", "Science"),
    MasterCourseRecord("2003340", "Chemistry 1", "Science"),
    MasterCourseRecord("1200310", "Algebra 1", "Mathematics", frozenset({"Algebra I"})),
    MasterCourseRecord("1001310", "English 1", "English"),
    MasterCourseRecord("1001340", "English 2", "English"),
]


def reply_for(items, prompt_tokens=1000, completion_tokens=200, model_id="gemini-test") -> InferenceReply:
    """InferenceReply whose text is the JSON encoding of items."""
    text = items if isinstance(items, str) else json.dumps(items)
    return InferenceReply(
        text=text,
        model_id=model_id,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )


def suggestion(ref, code, confidence=90, alternatives=None, cleaned_title="", reasoning="Looks right"):
    return {
        "record_ref": ref,
        "cleaned_title": cleaned_title,
        "suggested_code": code,
        "confidence": confidence,
        "reasoning": reasoning,
        "alternatives": alternatives or [],
    }


class FakeGeminiClient:
    """
    Scripted client. Each call pops the next item from script: an
    InferenceReply is returned, an exception is raised, and a callable
    is invoked with (api_key, system, prompt).
    """

    def __init__(self, script=None, model="gemini-test"):
        self.model = model
        self.script = list(script or [])
        self.calls = []

    def generate(self, api_key, system, prompt):
        self.calls.append({"api_key": api_key, "system": system, "prompt": prompt})
        if not self.script:
            raise AssertionError("FakeGeminiClient called more times than scripted")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(api_key, system, prompt)
        return step


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def normalized(element_id, title, code=None, category=None, batch_id="batch-1", description=None):
    return NormalizedRecord(
        batch_id=batch_id,
        element_id=element_id,
        title=title,
        code=code,
        description=description,
        category=category,
    )


@pytest.fixture
def catalog():
    return list(CATALOG)


@pytest.fixture
def index(catalog):
    return build_index(catalog)


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore(
        [
            make_credential("cred-a", "primary", api_key="key-a", now=FIXED_NOW),
            make_credential("cred-b", "backup", api_key="key-b", now=FIXED_NOW),
        ],
        clock=fixed_clock,
    )


@pytest.fixture
def allocator(credential_store):
    return QuotaAllocator(credential_store, clock=fixed_clock)


@pytest.fixture
def sleep():
    return SleepRecorder()
