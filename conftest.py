"""
Pytest configuration and fixtures for the exemption desk tests.
"""
import pytest
import os
import sys
import tempfile

import cv2
import numpy as np

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

# Isolated data directory and no real credential before the app is imported
os.environ.setdefault('EXEMPTION_DATA_DIR', tempfile.mkdtemp(prefix='exemptions-'))
for _name in ('GEMINI_API_KEY', 'VITE_GEMINI_API_KEY', 'API_KEY'):
    os.environ.pop(_name, None)
os.environ.setdefault('LOG_LEVEL', 'DEBUG')


class FakeProvider:
    """
    Stand-in extraction provider.

    Each call pops the next scripted answer: an exception is raised, anything
    else is returned as the provider's structured answer.
    """

    def __init__(self, answers=None, credential_configured=True):
        self.answers = list(answers or [])
        self.credential_configured = credential_configured
        self.calls = []

    def extract(self, payload, media_type):
        self.calls.append((payload, media_type))
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def fake_provider():
    """Provider answering with one valid extraction."""
    return FakeProvider(answers=[{
        "lastName": "Dupont",
        "firstName": "Marie",
        "studentClass": "602",
        "durationDays": 5,
        "startDate": "2024-03-10",
        "isTerminale": False,
    }])


@pytest.fixture
def desk(fake_provider):
    """Application coordinator with a fake provider and an empty store."""
    from app import desk as exemption_desk
    exemption_desk.extraction_client.provider = fake_provider
    exemption_desk.extraction_client.sleep = lambda seconds: None
    exemption_desk.close_session()
    exemption_desk.reset()
    yield exemption_desk
    exemption_desk.close_session()
    exemption_desk.reset()


@pytest.fixture
def app(desk):
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def sample_frame():
    """Synthetic 1600x1000 BGR document photo."""
    frame = np.full((1000, 1600, 3), 235, dtype=np.uint8)
    cv2.rectangle(frame, (200, 150), (1400, 850), (40, 40, 40), 6)
    cv2.putText(frame, "CERTIFICAT MEDICAL", (320, 480), cv2.FONT_HERSHEY_SIMPLEX, 3, (0, 0, 0), 6)
    return frame


@pytest.fixture
def sample_jpeg(sample_frame):
    """JPEG bytes of the sample frame."""
    ok, buffer = cv2.imencode('.jpg', sample_frame, [cv2.IMWRITE_JPEG_QUALITY, 95])
    assert ok
    return buffer.tobytes()


@pytest.fixture
def sample_png():
    """Small PNG bytes (narrower than the width cap)."""
    image = np.zeros((120, 200, 3), dtype=np.uint8)
    image[:, :100] = (255, 255, 255)
    ok, buffer = cv2.imencode('.png', image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def sample_pdf():
    """Minimal PDF bytes."""
    return (
        b"%PDF-1.4\n1 0 obj << /Type /Catalog /Pages 2 0 R >> endobj\n"
        b"2 0 obj << /Type /Pages /Kids [] /Count 0 >> endobj\n"
        b"trailer << /Root 1 0 R >>\n%%EOF\n"
    )
