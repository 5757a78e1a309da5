"""
Tests for the exemption desk HTTP API.
"""
import base64
import io
import threading

from error_handlers import CaptureAccessError
from layer3_extraction import ProviderCallError


def _extract_json(client, payload, mime_type='image/jpeg'):
    return client.post('/api/session/extract', json={
        "data": base64.b64encode(payload).decode('ascii'),
        "mimeType": mime_type,
    })


class TestHealth:
    """Test service status routes."""

    def test_health(self, client):
        """Test health check responds."""
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()["status"] == "ok"

    def test_status(self, client):
        """Test status reports extraction and camera state."""
        data = client.get('/api/status').get_json()
        assert data["success"] is True
        assert data["camera_active"] is False
        assert data["extraction_configured"] is True
        assert data["stability"]["stable"] is False

    def test_status_waits_for_lock(self, desk):
        """Test status reads the shared records and session under the desk lock."""
        result = []
        with desk._lock:
            reader = threading.Thread(target=lambda: result.append(desk.status()))
            reader.start()
            reader.join(timeout=0.2)
            assert result == []
        reader.join(timeout=5)
        assert result[0]["records"] == 0


class TestSessionFlow:
    """Test the editing session through the API."""

    def test_new_session_is_blank(self, client):
        """Test a new draft has every text field MISSING."""
        response = client.post('/api/session')
        assert response.status_code == 201
        session = response.get_json()["session"]
        assert session["state"] == "idle"
        assert session["draft"]["lastName"] == "A compléter"
        assert session["draft"]["missingFields"] == ["last_name", "first_name", "student_class"]

    def test_scan_edit_and_submit(self, client, sample_jpeg):
        """Test extraction, completing the missing name and submitting."""
        client.post('/api/session')

        response = _extract_json(client, sample_jpeg)
        data = response.get_json()
        assert response.status_code == 200
        assert data["success"] is True
        draft = data["session"]["draft"]
        assert draft["lastName"] == "DUPONT"
        assert draft["firstName"] == "Marie"
        assert draft["endDate"] == "2024-03-15"
        assert draft["mimeType"] == "image/jpeg"

        response = client.post('/api/session/submit')
        assert response.status_code == 201
        exemption = response.get_json()["exemption"]
        assert exemption["studentClass"] == "602"
        assert exemption["photoBase64"].startswith("/9j/")

        listing = client.get('/api/exemptions').get_json()
        assert listing["count"] == 1
        assert listing["exemptions"][0]["id"] == exemption["id"]

    def test_multipart_pdf_upload(self, client, fake_provider, sample_pdf):
        """Test PDFs upload as files and reach the provider untouched."""
        response = client.post('/api/session/extract', data={
            "document": (io.BytesIO(sample_pdf), "certificat.pdf", "application/pdf"),
        }, content_type='multipart/form-data')

        assert response.get_json()["success"] is True
        assert fake_provider.calls[0] == (sample_pdf, "application/pdf")
        assert response.get_json()["session"]["draft"]["photoBase64"].startswith("JVBER")

    def test_out_of_range_duration_answer(self, client, fake_provider, sample_jpeg):
        """Test an absurd extracted duration fails the analysis and the session stays readable."""
        fake_provider.answers = [{
            "lastName": "Dupont", "firstName": "Marie", "studentClass": "602",
            "durationDays": 5000000, "startDate": "2024-03-10", "isTerminale": False,
        }]

        data = _extract_json(client, sample_jpeg).get_json()

        assert data["success"] is False
        assert data["session"]["state"] == "failed"
        assert data["session"]["draft"]["error"]["error_code"] == "MALFORMED_RESPONSE"
        response = client.get('/api/session')
        assert response.status_code == 200
        assert response.get_json()["session"]["draft"]["durationDays"] == 1

    def test_patch_rejects_out_of_range_duration(self, client):
        """Test durations beyond ten years or below zero are refused."""
        client.patch('/api/session', json={"durationDays": 6})

        for value in (99999999, -5):
            response = client.patch('/api/session', json={"durationDays": value})
            assert response.status_code == 400
            assert response.get_json()["error_code"] == "INVALID_FIELD"

        response = client.get('/api/session')
        assert response.status_code == 200
        assert response.get_json()["session"]["draft"]["durationDays"] == 6

    def test_extraction_failure_keeps_draft(self, client, fake_provider, sample_jpeg):
        """Test provider errors are reported on the still-editable draft."""
        fake_provider.answers = [ProviderCallError("503 overloaded", status_code=503)] * 3
        client.patch('/api/session', json={"lastName": "Martin"})

        data = _extract_json(client, sample_jpeg).get_json()

        assert data["success"] is False
        assert data["session"]["state"] == "failed"
        assert data["session"]["draft"]["lastName"] == "Martin"
        assert data["session"]["draft"]["error"]["error_code"] == "PROVIDER_OVERLOADED"
        assert len(fake_provider.calls) == 3

    def test_missing_key(self, client, fake_provider, sample_jpeg):
        """Test a missing credential is surfaced distinctly."""
        fake_provider.credential_configured = False
        data = _extract_json(client, sample_jpeg).get_json()
        assert data["session"]["draft"]["error"]["error_code"] == "AUTH_MISSING"
        assert fake_provider.calls == []

    def test_invalid_base64(self, client):
        """Test garbage payloads are refused."""
        response = client.post('/api/session/extract', json={"data": "***", "mimeType": "image/jpeg"})
        assert response.status_code == 400
        assert response.get_json()["error_code"] == "INVALID_FIELD"

    def test_submit_requires_names(self, client):
        """Test submit is blocked while names are MISSING."""
        client.post('/api/session')
        response = client.post('/api/session/submit')
        assert response.status_code == 400
        body = response.get_json()
        assert body["error_code"] == "VALIDATION_FAILED"
        assert body["details"]["fields"] == ["last_name", "first_name"]

    def test_focus_clears_missing(self, client):
        """Test focusing a MISSING field empties it."""
        client.post('/api/session')
        draft = client.post('/api/session/focus/lastName').get_json()["session"]["draft"]
        assert draft["lastName"] == ""

    def test_patch_rejects_unknown_field(self, client):
        """Test unknown fields are refused."""
        response = client.patch('/api/session', json={"nickname": "Mimi"})
        assert response.status_code == 400

    def test_parental_note(self, client):
        """Test a parental note is submitted without a document."""
        client.post('/api/session')
        client.patch('/api/session', json={"lastName": "PETIT", "firstName": "Tom", "studentClass": "5B"})
        draft = client.post('/api/session/parental-note').get_json()["session"]["draft"]
        assert draft["isParentalNote"] is True
        assert draft["durationDays"] == 1

        exemption = client.post('/api/session/submit').get_json()["exemption"]
        assert exemption["isParentalNote"] is True
        assert "photoBase64" not in exemption

    def test_edit_existing(self, client):
        """Test an existing exemption is edited in place."""
        client.patch('/api/session', json={"lastName": "PETIT", "firstName": "Tom"})
        exemption = client.post('/api/session/submit').get_json()["exemption"]

        response = client.post('/api/session', json={"id": exemption["id"]})
        assert response.get_json()["session"]["editing"] is True
        client.patch('/api/session', json={"durationDays": 8})
        client.post('/api/session/submit')

        listing = client.get('/api/exemptions').get_json()
        assert listing["count"] == 1
        assert listing["exemptions"][0]["durationDays"] == 8

    def test_edit_unknown_record(self, client):
        """Test editing an unknown id returns 404."""
        assert client.post('/api/session', json={"id": "nope"}).status_code == 404


class TestExemptionRoutes:
    """Test dashboard routes."""

    def _submit(self, client, last_name, first_name, student_class):
        client.post('/api/session')
        client.patch('/api/session', json={
            "lastName": last_name, "firstName": first_name, "studentClass": student_class,
        })
        return client.post('/api/session/submit').get_json()["exemption"]

    def test_listing_carries_status(self, client):
        """Test each listed exemption reports expiry and days left."""
        self._submit(client, "MARTIN", "Léa", "4C")

        exemption = client.get('/api/exemptions').get_json()["exemptions"][0]

        assert exemption["expired"] is False
        assert exemption["daysRemaining"] == 1
        assert exemption["endingSoon"] is True
        assert exemption["endDateDisplay"].count("/") == 2

    def test_search_and_sort(self, client):
        """Test query parameters reach the listing."""
        self._submit(client, "MARTIN", "Léa", "4C")
        self._submit(client, "ADAM", "Hugo", "6A")

        data = client.get('/api/exemptions?sort=alpha_asc').get_json()
        assert [e["lastName"] for e in data["exemptions"]] == ["ADAM", "MARTIN"]

        data = client.get('/api/exemptions?search=4c').get_json()
        assert [e["lastName"] for e in data["exemptions"]] == ["MARTIN"]

    def test_invalid_query(self, client):
        """Test unknown sort orders are refused."""
        response = client.get('/api/exemptions?sort=random')
        assert response.status_code == 400

    def test_stats(self, client):
        """Test active and expired counts."""
        self._submit(client, "MARTIN", "Léa", "4C")
        data = client.get('/api/exemptions/stats').get_json()
        assert data["total"] == 1
        assert data["active"] == 1
        assert data["expired"] == 0

    def test_delete(self, client):
        """Test deleting an exemption."""
        exemption = self._submit(client, "MARTIN", "Léa", "4C")
        assert client.delete(f"/api/exemptions/{exemption['id']}").status_code == 200
        assert client.get('/api/exemptions').get_json()["count"] == 0
        assert client.delete(f"/api/exemptions/{exemption['id']}").status_code == 404

    def test_reset(self, client, desk):
        """Test full reset empties memory and disk."""
        self._submit(client, "MARTIN", "Léa", "4C")
        assert client.delete('/api/exemptions').get_json()["success"] is True
        assert desk.store.list() == []


class TestCameraRoutes:
    """Test camera routes without a device."""

    def test_start_camera_unavailable(self, client, desk, monkeypatch):
        """Test camera failure returns 503 and leaves the session editable."""
        def fail():
            raise CaptureAccessError(desk.camera.camera_index, reason="Failed to open camera device")

        monkeypatch.setattr(desk.camera, 'initialize', fail)
        response = client.post('/start_camera')

        assert response.status_code == 503
        assert response.get_json()["error_code"] == "CAPTURE_ACCESS_FAILED"
        assert client.get('/api/session').get_json()["session"]["state"] == "idle"

    def test_capture_without_camera(self, client):
        """Test capture refuses when the camera was never started."""
        response = client.post('/capture')
        assert response.status_code == 503

    def test_stop_camera(self, client):
        """Test stopping an idle camera is harmless."""
        assert client.post('/stop_camera').get_json()["success"] is True

    def test_stability_status(self, client):
        """Test the stability hint is reported."""
        data = client.get('/stability_status').get_json()
        assert data["active"] is False
        assert data["stability"]["stable_required"] == 16

    def _fake_camera(self, desk, monkeypatch, frame=None):
        released = []
        monkeypatch.setattr(desk.camera, 'initialize', lambda: True)
        monkeypatch.setattr(desk.camera, 'get_frame', lambda: frame)
        monkeypatch.setattr(desk.camera, 'release', lambda: released.append(True))
        return released

    def test_import_while_camera_open(self, client, desk, monkeypatch, sample_jpeg):
        """Test importing a file releases a camera left open."""
        released = self._fake_camera(desk, monkeypatch)
        assert client.post('/start_camera').status_code == 200
        assert client.get('/api/status').get_json()["camera_active"] is True

        data = _extract_json(client, sample_jpeg).get_json()

        assert data["success"] is True
        assert released
        assert client.get('/api/status').get_json()["camera_active"] is False
        assert client.get('/stability_status').get_json()["active"] is False

    def test_capture_analyzes_and_closes(self, client, desk, monkeypatch, sample_frame):
        """Test a camera capture runs the pipeline and closes the camera."""
        released = self._fake_camera(desk, monkeypatch, frame=sample_frame)
        client.post('/start_camera')

        response = client.post('/capture')

        assert response.status_code == 200
        assert response.get_json()["session"]["draft"]["lastName"] == "DUPONT"
        assert released
        assert client.get('/api/status').get_json()["camera_active"] is False
