import os
import unittest
from unittest.mock import patch

from enzyme_cli_bridge.domain.contracts import RunResult
from enzyme_cli_bridge.domain.errors import (
    CommandFailedError,
    DisallowedCommandError,
    JsonParseError,
    RunTimeoutError,
    ToolNotFoundError,
)
from enzyme_cli_bridge.services.error_codes import (
    ERROR_CATALOG,
    describe_error,
    detect_error_code,
    get_catalog_entry,
)
from enzyme_cli_bridge.util import redact, redact_with_audit


class TestErrorCatalog(unittest.TestCase):
    def test_codes_are_unique(self):
        codes = [entry.code for entry in ERROR_CATALOG]
        self.assertEqual(len(codes), len(set(codes)))

    def test_describe_typed_errors(self):
        described = describe_error(ToolNotFoundError("enzyme"))
        self.assertEqual(described["code"], "ERR_CLI_NOT_FOUND")
        self.assertEqual(described["detail"], "Error: enzyme CLI not found.")
        self.assertIn("install_cli", [a["id"] for a in described["actions"]])

        failed = CommandFailedError(RunResult(stdout="", stderr="bad config", exit_code=1), command="enzyme")
        self.assertEqual(describe_error(failed)["code"], "ERR_CLI_EXIT_NONZERO")
        self.assertEqual(describe_error(JsonParseError("oops"))["code"], "ERR_JSON_PARSE")
        self.assertEqual(describe_error(DisallowedCommandError("bash"))["code"], "ERR_POLICY_BLOCKED")

    def test_detect_from_text(self):
        self.assertEqual(detect_error_code(str(RunTimeoutError("run-1", 0.05))), "ERR_EXEC_TIMEOUT")
        self.assertEqual(detect_error_code("Error: npx exited with code 1."), "ERR_CLI_EXIT_NONZERO")
        self.assertEqual(detect_error_code("something else"), "ERR_UNKNOWN")
        self.assertEqual(detect_error_code(""), "ERR_UNKNOWN")

    def test_untyped_exceptions_fall_back_to_text(self):
        self.assertEqual(describe_error(RuntimeError("disk full"))["code"], "ERR_UNKNOWN")

    def test_unknown_code_lookup(self):
        self.assertEqual(get_catalog_entry("ERR_NOPE").code, "ERR_UNKNOWN")


class TestRedaction(unittest.TestCase):
    def test_npm_tokens_are_redacted(self):
        text = "//registry.npmjs.org/:_authToken=abc123secret\nnpm_" + "a" * 36
        cleaned = redact(text)
        self.assertNotIn("abc123secret", cleaned)
        self.assertNotIn("a" * 36, cleaned)

    def test_bearer_and_key_values(self):
        result = redact_with_audit("Authorization: Bearer eyJhbGciOi.x.y api_key=shh")
        self.assertTrue(result.redacted)
        self.assertNotIn("eyJhbGciOi", result.text)
        self.assertNotIn("shh", result.text)

    def test_plain_text_is_untouched(self):
        result = redact_with_audit("enzyme generate component Button")
        self.assertFalse(result.redacted)
        self.assertEqual(result.replacements, 0)

    def test_extra_patterns_from_environment(self):
        with patch.dict(os.environ, {"ENZYME_REDACTION_EXTRA_PATTERNS": r"corp-[0-9]{4};;"}):
            self.assertEqual(redact("id corp-1234"), "id REDACTED")


if __name__ == "__main__":
    unittest.main()
