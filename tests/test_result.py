from supportbot.services.result import ErrorCode, Result


class TestResult:
    def test_success(self):
        result = Result.success("value")
        assert result.ok is True
        assert result.value == "value"
        assert result.error is None

    def test_failure(self):
        result = Result.failure("Something went wrong", ErrorCode.LOCK_TIMEOUT)
        assert result.ok is False
        assert result.value is None
        assert result.error == "Something went wrong"
        assert result.error_code == "lock_timeout"

    def test_failure_default_code(self):
        assert Result.failure("boom").error_code == ErrorCode.UNKNOWN

    def test_unwrap_or(self):
        assert Result.success(5).unwrap_or(0) == 5
        assert Result.failure("x").unwrap_or(0) == 0

    def test_describe(self):
        assert Result.success("queued").describe() == "queued"
        assert Result.failure("no user id", ErrorCode.MISSING_USER_ID).describe() == "missing_user_id: no user id"
