"""Tests for the response envelope and request schema validation.

Every response has the shape ``{success, message?, error?, data?}`` where
``error`` is one of the stable codes clients switch on.
"""

import json

import pytest
from pydantic import ValidationError

from hydration_tracker.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from hydration_tracker.api.schemas import (
    ERROR_CODES,
    Envelope,
    LoginRequest,
    RegisterRequest,
)


class TestEnvelope:
    def test_success_envelope(self):
        env = Envelope(success=True, data={"ok": True})
        assert env.model_dump(exclude_none=True) == {"success": True, "data": {"ok": True}}

    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(success=False, error="teapot")

    @pytest.mark.parametrize("code", sorted(ERROR_CODES))
    def test_known_error_codes_accepted(self, code):
        assert Envelope(success=False, error=code).error == code


class TestErrorResponse:
    def test_explicit_code_kept(self):
        resp = _error_response(401, "session is no longer valid", code="INVALID_SESSION")
        assert resp.status_code == 401
        assert json.loads(resp.body) == {
            "success": False,
            "message": "session is no longer valid",
            "error": "INVALID_SESSION",
        }

    def test_unknown_code_falls_back_to_status(self):
        resp = _error_response(404, "missing", code="SOMETHING_ELSE")
        assert json.loads(resp.body)["error"] == "NOT_FOUND"

    def test_data_included_when_present(self):
        resp = _error_response(400, "bad", code="VALIDATION_ERROR", data={"errors": []})
        assert json.loads(resp.body)["data"] == {"errors": []}

    def test_status_mapping(self):
        assert _error_code_for_status(422) == "VALIDATION_ERROR"
        assert _error_code_for_status(418) == "INTERNAL_ERROR"
        assert set(_STATUS_TO_CODE.values()) <= ERROR_CODES


class TestRequestSchemas:
    def _register(self, **overrides):
        body = {
            "email": "Drinker@Example.com",
            "username": "drinker_1",
            "password": "Hydrate123A",
        }
        body.update(overrides)
        return RegisterRequest(**body)

    def test_camel_case_and_snake_case_accepted(self):
        camel = self._register(fullName="Dee", deviceInfo={"platform": "ios"})
        snake = self._register(full_name="Dee", device_info={"platform": "ios"})
        assert camel.full_name == snake.full_name == "Dee"
        assert camel.device_info == {"platform": "ios"}

    def test_email_is_normalized(self):
        assert self._register().email == "drinker@example.com"

    @pytest.mark.parametrize(
        "password",
        ["Short1A", "nouppercase1", "NOLOWERCASE1", "NoDigitsHere", "A1" + "a" * 127],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            self._register(password=password)

    @pytest.mark.parametrize("username", ["ab", "has space", "x" * 21, "dash-name"])
    def test_bad_usernames_rejected(self, username):
        with pytest.raises(ValidationError):
            self._register(username=username)

    def test_full_name_length(self):
        with pytest.raises(ValidationError):
            self._register(fullName="n" * 51)

    def test_device_info_must_be_small_and_flat(self):
        with pytest.raises(ValidationError):
            self._register(deviceInfo={"nested": {"a": 1}})
        with pytest.raises(ValidationError):
            self._register(deviceInfo={f"k{i}": i for i in range(33)})
        with pytest.raises(ValidationError):
            self._register(deviceInfo={"model": "m" * 257})

    def test_login_defaults(self):
        req = LoginRequest(login="a@example.com", password="x")
        assert req.remember_me is False
        assert LoginRequest(login="a@example.com", password="x", rememberMe=True).remember_me
