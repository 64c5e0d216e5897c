from __future__ import annotations

import pytest

from emissor_nfe.utils.certificate import validate_certificate


class TestValidateCertificate:
    def test_keys(self, test_pfx):
        pfx_path, password = test_pfx
        info = validate_certificate(pfx_path, password)
        assert set(info) == {
            "subject", "issuer", "not_before", "not_after", "valid", "serial", "cnpj",
        }

    def test_valid_true(self, test_pfx):
        pfx_path, password = test_pfx
        assert validate_certificate(pfx_path, password)["valid"] is True

    def test_cnpj_from_subject(self, test_pfx):
        pfx_path, password = test_pfx
        info = validate_certificate(pfx_path, password)
        assert info["cnpj"] == "12345678000199"
        assert "EMPRESA EXEMPLO LTDA" in info["subject"]

    def test_wrong_password(self, test_pfx):
        pfx_path, _ = test_pfx
        with pytest.raises(ValueError):
            validate_certificate(pfx_path, "wrongpassword")

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            validate_certificate("/nonexistent/path.pfx", "pass")
