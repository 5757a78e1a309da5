"""
PE Exemption Desk Web Application
Thin coordinator for the layered exemption recording system
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import base64
import binascii
import cv2
import logging
import threading

# Import layers
from layer1_capture import Camera, CaptureSession, RawCapture
from layer2_normalize import ImageNormalizer, resolve_media_type
from layer3_extraction import ExtractionClient, GeminiProvider, RetryPolicy
from layer4_records import (
    ExemptionSession,
    SessionState,
    exemption_stats,
    exemption_summary,
    filter_exemptions,
)
from layer4_records.listing import DEFAULT_SORT
from storage import (
    JsonRecordStore,
    KeyValueStore,
    delete_record,
    migrate_legacy,
    upsert_record,
)
from config import load_config

# Import error handling
from error_handlers import (
    DeskError,
    FieldUpdateError,
    PayloadTooLargeError,
    RecordNotFoundError,
    StorageError,
    handle_error,
    http_status_for,
)

config = load_config()

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
# Base64 inflates uploads by a third; the normalizer enforces the real ceiling
app.config['MAX_CONTENT_LENGTH'] = 32 * 1024 * 1024
CORS(app)


class ExemptionDesk:
    """
    Coordinates the exemption pipeline across layers
    Thin wrapper that delegates to layer-specific components

    Owns the committed record list and the single editing session. Both are
    guarded by one lock since Flask serves requests on several threads.
    """

    def __init__(self, config):
        logger.info("Initializing ExemptionDesk")
        self.config = config

        # Layer 1: Capture
        self.camera = Camera(camera_index=config.camera_index)
        self.capture_session = CaptureSession(self.camera)

        # Layer 2: Normalization
        self.normalizer = ImageNormalizer()

        # Layer 3: Extraction
        provider = GeminiProvider(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            timeout=config.request_timeout,
        )
        self.extraction_client = ExtractionClient(
            provider,
            retry_policy=RetryPolicy(base_delay=config.retry_delay),
        )

        # Storage
        self.store = JsonRecordStore(config.records_path)
        self.legacy_store = KeyValueStore(config.legacy_path)

        self._lock = threading.Lock()
        self.records = []
        self.session = None

        self.load_records()
        logger.info("ExemptionDesk initialized successfully")

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def load_records(self):
        """Run the legacy migration, then load the stored records"""
        try:
            migrate_legacy(self.legacy_store, self.store)
        except StorageError as e:
            handle_error(e, "Legacy migration failed; will retry on next start")

        with self._lock:
            self.records = self.store.list()
        logger.info(f"Loaded {len(self.records)} exemptions")

    def _persist(self):
        """Write the in-memory records; failures are logged, memory stays authoritative"""
        try:
            self.store.replace_all(self.records)
            return True
        except StorageError as e:
            handle_error(e, "Could not persist exemptions")
            return False

    def list_exemptions(self, search='', type_filter='ALL', status_filter='ALL',
                        sort_order=DEFAULT_SORT):
        with self._lock:
            records = list(self.records)
        return filter_exemptions(records, search=search, type_filter=type_filter,
                                 status_filter=status_filter, sort_order=sort_order)

    def stats(self):
        with self._lock:
            return exemption_stats(self.records)

    def find_record(self, record_id):
        with self._lock:
            for record in self.records:
                if record.id == record_id:
                    return record
        raise RecordNotFoundError(record_id)

    def delete_exemption(self, record_id):
        with self._lock:
            self.records = delete_record(self.records, record_id)
            persisted = self._persist()
        logger.info(f"Deleted exemption {record_id}")
        return persisted

    def reset(self):
        """Delete every exemption"""
        with self._lock:
            self.records = []
            try:
                self.store.clear()
                persisted = True
            except StorageError as e:
                handle_error(e, "Could not clear the record store")
                persisted = False
        logger.warning("All exemptions deleted")
        return persisted

    # ------------------------------------------------------------------
    # Editing session
    # ------------------------------------------------------------------

    def open_session(self, record_id=None):
        """Start a new draft, or edit an existing record"""
        record = self.find_record(record_id) if record_id else None
        with self._lock:
            self.session = ExemptionSession(self.normalizer, self.extraction_client, record=record)
            return self.session

    def current_session(self):
        with self._lock:
            if self.session is None:
                self.session = ExemptionSession(self.normalizer, self.extraction_client)
            return self.session

    def close_session(self):
        self.stop_capture()
        with self._lock:
            self.session = None
        logger.info("Editing session closed")

    def analyze(self, raw_capture):
        """
        Execute the analysis pipeline on the current session:
        Layer 2 -> Layer 3 -> Layer 4

        Returns:
            dict: Session state; draft.error is set when the pipeline failed
        """
        session = self.current_session()
        # An imported document ends any live capture
        if self.capture_session.active:
            logger.info("[Layer 1] Releasing camera before analysis")
            self.capture_session.close()
        draft = session.analyze(raw_capture)
        return {
            "success": draft.error is None,
            "session": session.to_dict(),
        }

    def submit(self):
        """
        Validate the draft and commit it

        Returns:
            tuple: (ExemptionRecord, persisted flag)
        """
        session = self.current_session()
        with self._lock:
            record = session.submit(existing_ids=[r.id for r in self.records])
            self.records = upsert_record(self.records, record)
            persisted = self._persist()
            self.session = None
        return record, persisted

    # ------------------------------------------------------------------
    # Capture surface (Layer 1)
    # ------------------------------------------------------------------

    def start_capture(self):
        """
        Open the camera for the current session

        Raises:
            CaptureAccessError: Camera unavailable; the session stays editable
        """
        session = self.current_session()
        if session.state != SessionState.CAPTURING:
            session.begin_capture()
        try:
            self.capture_session.open()
        except DeskError:
            session.cancel_capture()
            raise

    def stop_capture(self):
        if self.capture_session.active:
            self.capture_session.close()
        session = self.session
        if session is not None and session.state == SessionState.CAPTURING:
            session.cancel_capture()

    def capture_and_analyze(self):
        """
        Execute full pipeline from the camera:
        Layer 1 -> Layer 2 -> Layer 3 -> Layer 4
        """
        logger.info("[Layer 1] Capturing frame...")
        raw_capture = self.capture_session.capture()
        logger.info(f"[Layer 1] Frame captured - {raw_capture.size} bytes")
        return self.analyze(raw_capture)

    def status(self):
        with self._lock:
            session = self.session
            return {
                "camera_active": self.capture_session.active,
                "stability": self.capture_session.sampler.to_dict(),
                "extraction_configured": self.extraction_client.provider.credential_configured,
                "model": self.config.model,
                "records": len(self.records),
                "session": session.state.value if session else None,
            }


# Initialize exemption desk
logger.info("Starting application initialization")
desk = ExemptionDesk(config)


def error_response(error, log_message=None):
    return jsonify(handle_error(error, log_message)), http_status_for(error)


def _read_upload():
    """
    Build a RawCapture from a multipart 'document' file or a JSON body
    {"data": <base64>, "mimeType": ...}
    """
    upload = request.files.get('document')
    if upload is not None:
        payload = upload.read()
        return RawCapture(payload=payload, media_type=resolve_media_type(payload, upload.mimetype))

    body = request.get_json(silent=True) or {}
    data = body.get('data')
    if not data:
        raise FieldUpdateError('document', "no document supplied")
    # Accept data URLs as produced by browser file readers
    if isinstance(data, str) and data.startswith('data:') and ',' in data:
        data = data.split(',', 1)[1]
    try:
        payload = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise FieldUpdateError('data', "not valid base64")
    return RawCapture(payload=payload, media_type=resolve_media_type(payload, body.get('mimeType')))


# Flask Routes

@app.errorhandler(413)
def request_too_large(e):
    return error_response(PayloadTooLargeError(limit=app.config['MAX_CONTENT_LENGTH']))


@app.route('/health', methods=['GET'])
def health():
    return jsonify({"status": "ok"})


@app.route('/api/status', methods=['GET'])
def api_status():
    return jsonify({"success": True, **desk.status()})


@app.route('/api/exemptions', methods=['GET'])
def list_exemptions():
    """Dashboard listing with search, filters and sort"""
    args = request.args
    try:
        records = desk.list_exemptions(
            search=args.get('search', ''),
            type_filter=args.get('type', 'ALL').upper(),
            status_filter=args.get('status', 'ALL').upper(),
            sort_order=args.get('sort', DEFAULT_SORT).upper(),
        )
    except ValueError as e:
        return jsonify({"success": False, "error": str(e), "error_code": "INVALID_QUERY"}), 400
    return jsonify({
        "success": True,
        "count": len(records),
        "exemptions": [exemption_summary(r) for r in records],
    })


@app.route('/api/exemptions/stats', methods=['GET'])
def exemptions_stats():
    return jsonify({"success": True, **desk.stats()})


@app.route('/api/exemptions/<record_id>', methods=['DELETE'])
def delete_exemption(record_id):
    logger.info(f"Delete request for exemption {record_id}")
    try:
        persisted = desk.delete_exemption(record_id)
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "persisted": persisted})


@app.route('/api/exemptions', methods=['DELETE'])
def reset_exemptions():
    logger.warning("Full reset requested")
    persisted = desk.reset()
    return jsonify({"success": True, "persisted": persisted})


@app.route('/api/session', methods=['POST'])
def open_session():
    """Open a blank draft, or {"id": ...} to edit an existing exemption"""
    body = request.get_json(silent=True) or {}
    try:
        session = desk.open_session(record_id=body.get('id'))
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "session": session.to_dict()}), 201


@app.route('/api/session', methods=['GET'])
def get_session():
    return jsonify({"success": True, "session": desk.current_session().to_dict()})


@app.route('/api/session', methods=['PATCH'])
def update_session():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return error_response(FieldUpdateError('body', "expected a JSON object"))
    session = desk.current_session()
    try:
        session.update_fields(**body)
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "session": session.to_dict()})


@app.route('/api/session/focus/<field>', methods=['POST'])
def focus_field(field):
    session = desk.current_session()
    try:
        session.focus(field)
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "session": session.to_dict()})


@app.route('/api/session/parental-note', methods=['POST'])
def parental_note():
    session = desk.current_session()
    try:
        session.mark_parental_note()
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "session": session.to_dict()})


@app.route('/api/session/document', methods=['DELETE'])
def remove_document():
    session = desk.current_session()
    try:
        session.remove_document()
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "session": session.to_dict()})


@app.route('/api/session/error', methods=['DELETE'])
def dismiss_error():
    session = desk.current_session()
    session.dismiss_error()
    return jsonify({"success": True, "session": session.to_dict()})


@app.route('/api/session/extract', methods=['POST'])
def extract_document():
    """Analyze an imported file"""
    logger.info("Extraction request received from client")
    try:
        raw_capture = _read_upload()
        result = desk.analyze(raw_capture)
    except DeskError as e:
        return error_response(e)
    logger.info(f"Sending response to client: {result['success']}")
    return jsonify(result)


@app.route('/api/session/submit', methods=['POST'])
def submit_session():
    logger.info("Submit request received")
    try:
        record, persisted = desk.submit()
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True, "persisted": persisted, "exemption": record.to_dict()}), 201


@app.route('/api/session', methods=['DELETE'])
def close_session():
    desk.close_session()
    return jsonify({"success": True})


@app.route('/video_feed')
def video_feed():
    """Video streaming route; each frame sent also ticks the stability hint"""
    logger.info("Video feed requested")

    def generate():
        frame_count = 0
        for frame in desk.capture_session.frames():
            if frame is None:
                continue
            ret, buffer = cv2.imencode('.jpg', frame)
            if not ret:
                continue

            frame_count += 1
            if frame_count % 30 == 0:
                logger.debug(f"Video stream: {frame_count} frames sent, stable: {desk.capture_session.is_stable}")

            yield (b'--frame\r\n'
                   b'Content-Type: image/jpeg\r\n\r\n' + buffer.tobytes() + b'\r\n')
        logger.info("Video stream ended")

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


@app.route('/stability_status', methods=['GET'])
def stability_status():
    """Advisory stability hint for the capture surface"""
    return jsonify({
        "success": True,
        "active": desk.capture_session.active,
        "stability": desk.capture_session.sampler.to_dict(),
    })


@app.route('/capture', methods=['POST'])
def capture():
    """Capture the current frame and analyze it"""
    logger.info("Capture request received from client")
    try:
        result = desk.capture_and_analyze()
    except DeskError as e:
        desk.stop_capture()
        return error_response(e)
    logger.info(f"Sending response to client: {result['success']}")
    return jsonify(result)


@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Initialize camera"""
    logger.info("Start camera request received")
    try:
        desk.start_capture()
    except DeskError as e:
        return error_response(e)
    return jsonify({"success": True})


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop camera"""
    logger.info("Stop camera request received")
    desk.stop_capture()
    return jsonify({"success": True})


if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("PE EXEMPTION DESK WEB SERVER")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_capture/     - Camera, capture session, stability hint")
    print("  layer2_normalize/   - Size ceiling and JPEG re-encoding")
    print("  layer3_extraction/  - Gemini field extraction with retry")
    print("  layer4_records/     - Reconciliation, editing session, listing")
    print("  storage/            - JSON record store and legacy migration")
    print(f"  {config.data_dir}/")
    print("\n🌐 Server Info:")
    print("  URL: http://localhost:5000")
    print(f"  Logging Level: {config.log_level}")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{config.camera_index}")
    print("\n🔑 Extraction:")
    print(f"  Model: {config.model}")
    print(f"  API key: {'configured' if config.api_key else 'MISSING'}")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, threaded=True)
