import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from kcradius.errors import InstallError, InvalidInput
from kcradius.radius_config import (
    RadiusPluginConfig,
    RadSecConfig,
    generate_secret,
    load_config_document,
    merge_config,
    validate_count,
    validate_port,
    validate_secret,
    write_config_atomic,
)

DEFAULT_DOCUMENT = {
    "sharedSecret": "S3cr3t==",
    "authPort": 1812,
    "accountPort": 1813,
    "numberThreads": 8,
    "useUdpRadius": True,
    "externalDictionary": None,
    "otpWithoutPassword": [],
    "radsec": {
        "useRadSec": False,
        "privateKey": "config/private.key",
        "certificate": "config/public.crt",
        "numberThreads": 8,
    },
    "coa": {"useCoA": False, "port": 3799},
}


class TestValidation(unittest.TestCase):
    def test_port_accepts_integers_and_digit_strings(self) -> None:
        self.assertEqual(validate_port(1812), 1812)
        self.assertEqual(validate_port(" 1813 "), 1813)
        self.assertEqual(validate_port("65535"), 65535)

    def test_port_rejects_zero_negative_and_non_numeric(self) -> None:
        for value in (0, "0", -1, "-1812", "abc", "", "18a12", "1812.0", 1812.0, True, None, 65536):
            with self.subTest(value=value):
                with self.assertRaises(InvalidInput):
                    validate_port(value, name="authPort")

    def test_count_requires_positive_integer(self) -> None:
        self.assertEqual(validate_count("8"), 8)
        for value in (0, "-2", "eight"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidInput):
                    validate_count(value)

    def test_secret_must_be_non_empty_without_control_chars(self) -> None:
        self.assertEqual(validate_secret('a"b\\c'), 'a"b\\c')
        for value in ("", "line\nbreak", "tab\there", None):
            with self.subTest(value=value):
                with self.assertRaises(InvalidInput):
                    validate_secret(value)

    def test_validated_normalizes_string_ports(self) -> None:
        cfg = RadiusPluginConfig(sharedSecret="x", authPort="1900", accountPort="1901").validated()  # type: ignore[arg-type]

        self.assertEqual((cfg.authPort, cfg.accountPort), (1900, 1901))

    def test_validated_checks_nested_blocks(self) -> None:
        cfg = RadiusPluginConfig(sharedSecret="x", radsec=RadSecConfig(numberThreads=0))

        with self.assertRaises(InvalidInput):
            cfg.validated()


class TestGenerateSecret(unittest.TestCase):
    def test_generated_secret_is_json_safe_and_random(self) -> None:
        a = generate_secret()
        b = generate_secret()

        self.assertNotEqual(a, b)
        self.assertGreaterEqual(len(a), 64)
        self.assertEqual(json.loads(json.dumps(a)), a)
        self.assertTrue(all(c.isalnum() or c in "-_" for c in a))


class TestMerge(unittest.TestCase):
    def test_fresh_document_has_documented_defaults(self) -> None:
        self.assertEqual(merge_config(None, RadiusPluginConfig(sharedSecret="S3cr3t==")), DEFAULT_DOCUMENT)

    def test_unmanaged_fields_are_preserved(self) -> None:
        existing = {
            "sharedSecret": "old",
            "authPort": 1812,
            "accountPort": 1813,
            "numberThreads": 32,
            "externalDictionary": "/etc/dict",
            "otpWithoutPassword": ["unifi", "mikrotik"],
            "radsec": {"useRadSec": True, "privateKey": "/etc/radsec/key.pem", "certificate": "/etc/radsec/cert.pem"},
            "operatorNote": {"nested": [1, 2, 3]},
        }
        desired = RadiusPluginConfig(sharedSecret="new", authPort=11812, accountPort=11813)

        merged = merge_config(existing, desired)

        self.assertEqual(merged["sharedSecret"], "new")
        self.assertEqual(merged["authPort"], 11812)
        self.assertEqual(merged["accountPort"], 11813)
        self.assertIsNone(merged["externalDictionary"])
        for key in ("numberThreads", "otpWithoutPassword", "radsec", "operatorNote"):
            self.assertEqual(merged[key], existing[key])
        self.assertNotIn("coa", merged)
        self.assertEqual(existing["sharedSecret"], "old")

    def test_merge_keeps_existing_key_order(self) -> None:
        existing = {"coa": {"useCoA": True, "port": 3799}, "sharedSecret": "old"}

        merged = merge_config(existing, RadiusPluginConfig(sharedSecret="new"))

        self.assertEqual(list(merged)[:2], ["coa", "sharedSecret"])


class TestWriteConfig(unittest.TestCase):
    def test_write_is_owner_only_and_round_trips_secrets(self) -> None:
        secrets = ["S3cr3t==", 'quote"back\\slash', "dollar$`tick'", "ünïcødé €", "{\"json\": true}"]
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config" / "radius.config"
            for secret in secrets:
                with self.subTest(secret=secret):
                    write_config_atomic(path, merge_config(None, RadiusPluginConfig(sharedSecret=secret)))

                    self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["sharedSecret"], secret)
                    self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o600)

            leftovers = [p.name for p in path.parent.iterdir() if p.name != "radius.config"]
            self.assertEqual(leftovers, [])

    def test_second_write_is_byte_identical(self) -> None:
        desired = RadiusPluginConfig(sharedSecret="S3cr3t==")
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "radius.config"
            write_config_atomic(path, merge_config(load_config_document(path), desired))
            first = path.read_bytes()
            write_config_atomic(path, merge_config(load_config_document(path), desired))

            self.assertEqual(path.read_bytes(), first)

    def test_secret_rotation_only_touches_shared_secret(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "radius.config"
            original = dict(DEFAULT_DOCUMENT)
            original["radsec"] = {
                "useRadSec": True,
                "privateKey": "/etc/keycloak/radsec.key",
                "certificate": "/etc/keycloak/radsec.crt",
                "numberThreads": 4,
            }
            path.write_text(json.dumps(original, indent=4), encoding="utf-8")

            desired = RadiusPluginConfig(sharedSecret="rotated")
            write_config_atomic(path, merge_config(load_config_document(path), desired))

            after = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(after, {**original, "sharedSecret": "rotated"})

    @unittest.skipUnless(os.path.isdir("/proc/self/fd"), "needs /proc/self/fd")
    def test_failed_chmod_closes_descriptor_and_leaves_no_temp_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "radius.config"
            open_before = len(os.listdir("/proc/self/fd"))

            with patch("kcradius.radius_config.os.fchmod", side_effect=PermissionError(1, "Operation not permitted")):
                with self.assertRaises(PermissionError):
                    write_config_atomic(path, merge_config(None, RadiusPluginConfig(sharedSecret="x")))

            self.assertEqual(len(os.listdir("/proc/self/fd")), open_before)
            self.assertEqual(list(Path(td).iterdir()), [])

    def test_unreadable_document_is_a_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "radius.config"
            path.mkdir()

            with self.assertRaises(InstallError) as ctx:
                load_config_document(path)

        self.assertEqual(ctx.exception.phase, "config")

    def test_invalid_existing_document_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "radius.config"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(InvalidInput):
                load_config_document(path)

            path.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaises(InvalidInput):
                load_config_document(path)


if __name__ == "__main__":
    unittest.main()
