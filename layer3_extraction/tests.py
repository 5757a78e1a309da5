"""
Tests for field extraction: schema parsing, retry and error classification.
"""
import json
from datetime import date
from types import SimpleNamespace

import httpx
import pytest
from google.genai import errors

from error_handlers import (
    AuthError,
    MalformedResponseError,
    PayloadTooLargeError,
    TransientProviderError,
    UnclassifiedProviderError,
)
from layer2_normalize import NormalizedDocument
from layer3_extraction import (
    ExtractionClient,
    GeminiProvider,
    ProviderCallError,
    RetryPolicy,
    classify_error,
    parse_extracted_fields,
    parse_start_date,
)
from layer3_extraction.gemini import EXTRACTION_PROMPT

DOCUMENT = NormalizedDocument(payload=b'\xff\xd8\xff fake jpeg', media_type='image/jpeg')

MARIE = {
    "lastName": None,
    "firstName": "Marie",
    "studentClass": "602",
    "durationDays": 5,
    "startDate": "2024-03-10",
    "isTerminale": False,
}


class ScriptedProvider:
    """Provider double replaying scripted answers."""

    def __init__(self, *answers, credential_configured=True):
        self.answers = list(answers)
        self.credential_configured = credential_configured
        self.calls = 0

    def extract(self, payload, media_type):
        self.calls += 1
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def overloaded():
    return ProviderCallError("503 The model is overloaded. Please try again later.",
                             status_code=503, status="UNAVAILABLE")


def make_client(provider):
    delays = []
    client = ExtractionClient(provider, retry_policy=RetryPolicy(), sleep=delays.append)
    return client, delays


class TestParseExtractedFields:
    """Test schema validation of provider answers."""

    def test_valid_answer(self):
        """Test a complete answer parses into typed fields."""
        fields = parse_extracted_fields(json.dumps(MARIE))

        assert fields.last_name is None
        assert fields.first_name == "Marie"
        assert fields.student_class == "602"
        assert fields.duration_days == 5
        assert fields.start_date == date(2024, 3, 10)
        assert fields.is_terminale is False

    def test_numeric_class_becomes_text(self):
        """Test a class read as a number is kept as text."""
        fields = parse_extracted_fields({**MARIE, "studentClass": 602})
        assert fields.student_class == "602"

    def test_fractional_duration_is_rounded(self):
        """Test durations are whole days."""
        assert parse_extracted_fields({**MARIE, "durationDays": 6.6}).duration_days == 7

    def test_missing_is_terminale_tolerated(self):
        """Test an absent isTerminale is read as unknown."""
        data = dict(MARIE)
        del data["isTerminale"]
        assert parse_extracted_fields(data).is_terminale is None

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        json.dumps({**MARIE, "durationDays": "five"}),
        json.dumps({**MARIE, "durationDays": -2}),
        json.dumps({**MARIE, "durationDays": 5000000}),
        json.dumps({**MARIE, "durationDays": 10 ** 400}),
        '{"lastName": null, "durationDays": Infinity, "isTerminale": false}',
        '{"lastName": null, "durationDays": NaN, "isTerminale": false}',
        json.dumps({**MARIE, "isTerminale": "yes"}),
        json.dumps({**MARIE, "firstName": {"value": "Marie"}}),
        json.dumps({**MARIE, "startDate": 20240310}),
    ])
    def test_malformed_answers(self, raw):
        """Test answers outside the schema raise MalformedResponseError."""
        with pytest.raises(MalformedResponseError) as exc_info:
            parse_extracted_fields(raw)
        assert exc_info.value.error_code == "MALFORMED_RESPONSE"

    def test_ten_year_duration_accepted(self):
        """Test the longest accepted exemption still parses."""
        assert parse_extracted_fields({**MARIE, "durationDays": 3650}).duration_days == 3650

    def test_infinite_duration_in_dict_is_malformed(self):
        """Test a non-finite number is refused when the answer is already parsed."""
        with pytest.raises(MalformedResponseError):
            parse_extracted_fields({**MARIE, "durationDays": float('inf')})

    def test_french_date_format(self):
        """Test dates printed as DD/MM/YYYY are accepted."""
        assert parse_start_date("05/01/2025") == date(2025, 1, 5)

    def test_unreadable_date_dropped(self):
        """Test an unreadable date is dropped rather than guessed."""
        assert parse_start_date("next monday") is None
        assert parse_start_date("31/02/2024") is None
        assert parse_start_date("") is None


class TestExtractionClient:
    """Test retry and classification around the provider."""

    def test_success_first_attempt(self):
        """Test a good answer returns fields without retrying."""
        provider = ScriptedProvider(json.dumps(MARIE))
        client, delays = make_client(provider)

        fields = client.extract(DOCUMENT)

        assert fields.first_name == "Marie"
        assert provider.calls == 1
        assert delays == []

    def test_three_transient_failures(self):
        """Test 3 overloads give 3 attempts, increasing delays, then TransientProviderError."""
        provider = ScriptedProvider(overloaded(), overloaded(), overloaded())
        client, delays = make_client(provider)

        with pytest.raises(TransientProviderError) as exc_info:
            client.extract(DOCUMENT)

        assert provider.calls == 3
        assert delays == [1.0, 2.0]
        assert delays == sorted(set(delays))
        assert exc_info.value.details["attempts"] == 3
        assert exc_info.value.error_code == "PROVIDER_OVERLOADED"

    def test_recovers_after_transient_failure(self):
        """Test a rate limit followed by success returns the fields."""
        rate_limited = ProviderCallError("429 Resource has been exhausted", status_code=429)
        provider = ScriptedProvider(rate_limited, MARIE)
        client, delays = make_client(provider)

        assert client.extract(DOCUMENT).student_class == "602"
        assert provider.calls == 2
        assert delays == [1.0]

    def test_missing_credential_never_calls_provider(self):
        """Test a missing key is reported without a network call."""
        provider = ScriptedProvider(credential_configured=False)
        client, _ = make_client(provider)

        with pytest.raises(AuthError) as exc_info:
            client.extract(DOCUMENT)

        assert exc_info.value.error_code == "AUTH_MISSING"
        assert provider.calls == 0

    def test_rejected_key_not_retried(self):
        """Test an invalid key surfaces as AuthError after one attempt."""
        provider = ScriptedProvider(ProviderCallError(
            "400 API key not valid. Please pass a valid API key.",
            status_code=400, status="INVALID_ARGUMENT"))
        client, delays = make_client(provider)

        with pytest.raises(AuthError) as exc_info:
            client.extract(DOCUMENT)

        assert exc_info.value.error_code == "AUTH_REJECTED"
        assert provider.calls == 1
        assert delays == []

    def test_malformed_answer_not_retried(self):
        """Test a schema violation stops immediately."""
        provider = ScriptedProvider("{broken", MARIE)
        client, _ = make_client(provider)

        with pytest.raises(MalformedResponseError):
            client.extract(DOCUMENT)
        assert provider.calls == 1

    def test_unclassified_keeps_raw_message(self):
        """Test other failures surface with the provider's own message."""
        provider = ScriptedProvider(ProviderCallError(
            "404 models/gemini-unknown is not found", status_code=404, status="NOT_FOUND"))
        client, _ = make_client(provider)

        with pytest.raises(UnclassifiedProviderError) as exc_info:
            client.extract(DOCUMENT)

        assert exc_info.value.message == "404 models/gemini-unknown is not found"
        assert exc_info.value.details["status_code"] == 404


class TestClassifyError:
    """Test mapping of provider failures."""

    def test_forbidden_is_auth(self):
        """Test 403 means a rejected credential."""
        error = classify_error(ProviderCallError("403 Permission denied", status_code=403), 1)
        assert isinstance(error, AuthError)

    def test_payload_too_large(self):
        """Test provider-side size refusal maps to PayloadTooLargeError."""
        error = classify_error(ProviderCallError("413 Request payload size exceeds the limit",
                                                 status_code=413), 1)
        assert isinstance(error, PayloadTooLargeError)
        assert error.details["source"] == "provider"

    def test_network_failure_is_unclassified(self):
        """Test transport errors are not retried as overloads."""
        error = classify_error(ProviderCallError("Gemini request failed: connection refused"), 1)
        assert isinstance(error, UnclassifiedProviderError)

    def test_digits_inside_message_ignored(self):
        """Test a byte count containing 413 or 503 does not decide the class."""
        for message in ("400 Request of 4135 bytes rejected: invalid mime type",
                        "400 Field 'x' at offset 15030 is invalid"):
            error = classify_error(ProviderCallError(message, status_code=400,
                                                     status="INVALID_ARGUMENT"), 1)
            assert isinstance(error, UnclassifiedProviderError)
            assert error.message == message

    def test_leading_code_without_status(self):
        """Test a message starting with the HTTP code classifies like the code."""
        assert isinstance(classify_error(ProviderCallError("503 busy"), 1), TransientProviderError)
        assert isinstance(classify_error(ProviderCallError("403 nope"), 1), AuthError)
        assert isinstance(classify_error(ProviderCallError("413 nope"), 1), PayloadTooLargeError)

    def test_status_code_wins_over_leading_digits(self):
        """Test an explicit status code is used over the message prefix."""
        error = classify_error(ProviderCallError("503 in the message", status_code=400), 1)
        assert isinstance(error, UnclassifiedProviderError)


class FakeModels:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error:
            raise self.error
        return self.response


class FakeGenaiClient:
    def __init__(self, response=None, error=None):
        self.models = FakeModels(response, error)


class TestGeminiProvider:
    """Test the Gemini provider against a fake SDK client."""

    def make_provider(self, client, api_key="test-key"):
        provider = GeminiProvider(api_key=api_key, model="gemini-test")
        provider._client = client
        return provider

    def test_request_shape(self):
        """Test the document, prompt and schema are sent."""
        client = FakeGenaiClient(SimpleNamespace(text=json.dumps(MARIE)))
        provider = self.make_provider(client)

        text = provider.extract(b'%PDF-1.4', 'application/pdf')

        assert json.loads(text) == MARIE
        sent = client.models.calls[0]
        assert sent["model"] == "gemini-test"
        document, prompt = sent["contents"]
        assert document.inline_data.data == b'%PDF-1.4'
        assert document.inline_data.mime_type == 'application/pdf'
        assert prompt == EXTRACTION_PROMPT
        assert sent["config"].response_mime_type == 'application/json'
        assert sent["config"].temperature == 0

    def test_api_error_becomes_provider_call_error(self):
        """Test Google API errors keep code, message and status."""
        client = FakeGenaiClient(error=errors.ServerError(503, {
            "error": {"code": 503, "message": "The model is overloaded.", "status": "UNAVAILABLE"}
        }))
        provider = self.make_provider(client)

        with pytest.raises(ProviderCallError) as exc_info:
            provider.extract(b'x', 'image/jpeg')

        error = exc_info.value
        assert error.status_code == 503
        assert error.status == "UNAVAILABLE"
        assert error.message == "503 The model is overloaded."

    def test_rejected_key(self):
        """Test a refused key is reported with its client error code."""
        client = FakeGenaiClient(error=errors.ClientError(400, {
            "error": {"code": 400, "message": "API key not valid. Please pass a valid API key.",
                      "status": "INVALID_ARGUMENT"}
        }))
        provider = self.make_provider(client)

        with pytest.raises(ProviderCallError) as exc_info:
            provider.extract(b'x', 'image/jpeg')
        assert isinstance(classify_error(exc_info.value, 1), AuthError)

    def test_transport_error(self):
        """Test connection failures become ProviderCallError without a status code."""
        provider = self.make_provider(FakeGenaiClient(error=httpx.ConnectError("refused")))

        with pytest.raises(ProviderCallError) as exc_info:
            provider.extract(b'x', 'image/jpeg')
        assert exc_info.value.status_code is None
        assert exc_info.value.message.startswith("Gemini request failed")

    def test_empty_answer_is_malformed(self):
        """Test an answer without text is malformed."""
        provider = self.make_provider(FakeGenaiClient(SimpleNamespace(text=None)))

        with pytest.raises(MalformedResponseError):
            provider.extract(b'x', 'image/jpeg')

    def test_credential_configured(self):
        """Test blank keys count as missing and build no client."""
        provider = GeminiProvider(api_key="  ")
        assert not provider.credential_configured
        assert provider._client is None
        assert not GeminiProvider(api_key=None).credential_configured
        assert GeminiProvider(api_key="abc").credential_configured
