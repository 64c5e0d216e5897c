from __future__ import annotations

from importlib.resources import files
from unittest.mock import MagicMock, patch

import pytest
import yaml

from emissor_nfe.cli import (
    _chave,
    _check_keyring_available,
    _init_config,
    _montar,
    _notas,
    _numeracao,
    _preflight,
    _remove_env_var,
    _request_dict,
    _setup_certificate,
    _upsert_env_var,
    _warn_open_permissions,
    main,
)
from emissor_nfe.models.record import InvoiceStatus
from emissor_nfe.utils.registry import JsonInvoiceRepository
from tests.conftest import KEY_NNF_1


@pytest.fixture
def dirs(monkeypatch, tmp_path, config_dir):
    data_dir = tmp_path / "data"
    monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
    monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: data_dir)
    return config_dir, data_dir


@pytest.fixture
def request_file(tmp_path, request_dict):
    data = dict(request_dict)
    del data["emitente"]
    del data["numero"]
    path = tmp_path / "pedido.yaml"
    path.write_text(yaml.dump(data, allow_unicode=True))
    return path


class TestMain:
    @patch("emissor_nfe.cli._init_config")
    def test_init_dispatches(self, mock_init):
        with patch("sys.argv", ["emissor-nfe", "init"]):
            main()
        mock_init.assert_called_once()

    @patch("emissor_nfe.cli._montar", return_value=0)
    @patch("emissor_nfe.cli._preflight", return_value=True)
    def test_montar_dispatches(self, mock_preflight, mock_montar):
        with (
            patch("sys.argv", ["emissor-nfe", "montar", "pedido.yaml", "producao"]),
            pytest.raises(SystemExit) as exc_info,
        ):
            main()
        assert exc_info.value.code == 0
        assert mock_montar.call_args.args[1] == "producao"

    @patch("emissor_nfe.cli._preflight", return_value=False)
    def test_montar_exits_1_on_failed_preflight(self, mock_preflight):
        with (
            patch("sys.argv", ["emissor-nfe", "montar", "pedido.yaml"]),
            pytest.raises(SystemExit, match="1"),
        ):
            main()

    def test_invalid_env(self):
        with (
            patch("sys.argv", ["emissor-nfe", "notas", "staging"]),
            pytest.raises(SystemExit, match="Ambiente"),
        ):
            main()

    def test_usage(self, capsys):
        with patch("sys.argv", ["emissor-nfe"]), pytest.raises(SystemExit, match="2"):
            main()
        assert "Uso: emissor-nfe" in capsys.readouterr().out


class TestPreflight:
    def test_preflight_ok(self, dirs):
        _, data_dir = dirs
        assert _preflight() is True
        assert data_dir.is_dir()

    def test_preflight_no_config(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: tmp_path / "missing")
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: tmp_path / "data")
        assert _preflight() is False
        assert "emissor-nfe init" in capsys.readouterr().out

    def test_preflight_no_emitter(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: tmp_path / "data")
        assert _preflight() is False
        assert "emitter.yaml" in capsys.readouterr().out


class TestMontar:
    def test_request_dict_merges_emitter(self, dirs, request_file, emitente_dict):
        data = _request_dict(request_file, "producao")
        assert data["emitente"] == emitente_dict
        # tpAmb from the file wins over the environment default
        assert data["tpAmb"] == "2"

    def test_request_dict_env_default(self, dirs, tmp_path):
        path = tmp_path / "pedido.yaml"
        path.write_text(yaml.dump({"emitente": {"CNPJ": "1"}}))
        assert _request_dict(path, "producao")["tpAmb"] == "1"

    def test_assembles_and_registers(self, dirs, request_file, capsys):
        _, data_dir = dirs
        assert _montar(request_file, "homologacao") == 0

        (record,) = JsonInvoiceRepository(data_dir / "homologacao" / "invoices.json").list()
        assert record.status is InvoiceStatus.DRAFT
        assert record.numero == 1
        xml_file = data_dir / "homologacao" / "notas" / f"{record.chave}-nfe.xml"
        assert xml_file.read_text(encoding="utf-8") == record.xml

        out = capsys.readouterr().out
        assert "NF-e montada (serie 1, número 1)" in out
        assert "R$ 100,00" in out

    def test_numbering_advances(self, dirs, request_file):
        _montar(request_file, "homologacao")
        _montar(request_file, "homologacao")
        _, data_dir = dirs
        records = JsonInvoiceRepository(data_dir / "homologacao" / "invoices.json").list()
        assert [r.numero for r in records] == [1, 2]

    def test_bundled_templates_assemble(self, dirs, tmp_path):
        config_dir, _ = dirs
        templates = files("emissor_nfe") / "templates"
        (config_dir / "emitter.yaml").write_text(
            (templates / "emitter.yaml.example").read_text(encoding="utf-8")
        )
        request = tmp_path / "request.yaml"
        request.write_text((templates / "request.yaml.example").read_text(encoding="utf-8"))
        assert _montar(request, "homologacao") == 0

    def test_invalid_request(self, dirs, tmp_path, request_dict, capsys):
        path = tmp_path / "ruim.yaml"
        path.write_text(yaml.dump(dict(request_dict, tpNF="9")))
        assert _montar(path, "homologacao") == 1
        assert "tpNF" in capsys.readouterr().out

    def test_missing_file(self, dirs, tmp_path, capsys):
        assert _montar(tmp_path / "nada.yaml", "homologacao") == 1
        assert "não encontrado" in capsys.readouterr().out


class TestNotas:
    def test_empty(self, dirs, capsys):
        assert _notas("homologacao") == 0
        assert "Nenhuma NF-e registrada" in capsys.readouterr().out

    def test_lists_records(self, dirs, request_file, capsys):
        _montar(request_file, "homologacao")
        capsys.readouterr()
        assert _notas("homologacao") == 0
        out = capsys.readouterr().out
        assert "rascunho" in out
        assert "CONSUMIDOR TESTE" in out


class TestChave:
    def test_valid_key(self, dirs, capsys):
        assert _chave(KEY_NNF_1) == 0
        out = capsys.readouterr().out
        assert "cUF    35" in out
        assert "confere" in out

    def test_wrong_check_digit(self, dirs, capsys):
        assert _chave(KEY_NNF_1[:-1] + "1") == 1
        assert "inválido" in capsys.readouterr().out

    def test_wrong_length(self, dirs, capsys):
        assert _chave("123") == 1
        assert "44 digitos" in capsys.readouterr().out

    def test_reports_registered_record(self, dirs, request_file, capsys):
        _montar(request_file, "homologacao")
        _, data_dir = dirs
        (record,) = JsonInvoiceRepository(data_dir / "homologacao" / "invoices.json").list()
        capsys.readouterr()
        assert _chave(record.chave) == 0
        assert f"Registrada em homologacao: rascunho (id {record.id})" in capsys.readouterr().out


class TestNumeracao:
    def test_show(self, dirs, capsys):
        assert _numeracao([]) == 0
        assert "Série 1 (homologacao): último 0, próximo 1" in capsys.readouterr().out

    def test_set(self, dirs, capsys):
        assert _numeracao(["producao", "2", "41"]) == 0
        assert "último 41, próximo 42" in capsys.readouterr().out
        assert _numeracao(["producao", "2"]) == 0
        assert "último 41" in capsys.readouterr().out

    def test_invalid_number(self, dirs, capsys):
        assert _numeracao(["producao", "um"]) == 1
        assert "inteiros" in capsys.readouterr().out

    def test_negative_number(self, dirs, capsys):
        assert _numeracao(["producao", "1", "-3"]) == 1


class TestInitConfig:
    def test_copies_templates(self, monkeypatch, tmp_path):
        config_dir = tmp_path / "config"
        data_dir = tmp_path / "data"
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: data_dir)
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        for name in ("emitter.yaml.example", "resp_tec.yaml.example", "request.yaml.example"):
            assert (config_dir / name).exists()
        assert data_dir.exists()

    def test_skips_existing(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        config_dir.mkdir(parents=True)
        (config_dir / "emitter.yaml.example").write_text("existing")
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: tmp_path / "data")
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        assert (config_dir / "emitter.yaml.example").read_text() == "existing"
        assert "já existe" in capsys.readouterr().out

    def test_eof_during_cert_prompt(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr("emissor_nfe.config.get_config_dir", lambda: tmp_path / "config")
        monkeypatch.setattr("emissor_nfe.config.get_data_dir", lambda: tmp_path / "data")
        monkeypatch.setattr("builtins.input", MagicMock(side_effect=EOFError))
        _init_config()
        assert "Configuração:" in capsys.readouterr().out


class TestEnvFile:
    def test_upsert_creates_new_file(self, tmp_path):
        env_file = tmp_path / "sub" / ".env"
        _upsert_env_var(env_file, "KEY", "value")
        assert "KEY=" in env_file.read_text()

    def test_upsert_updates_existing_key(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("MY_KEY='old'\nOTHER='keep'\n")
        _upsert_env_var(env_file, "MY_KEY", "new")
        content = env_file.read_text()
        assert "'old'" not in content
        assert "OTHER=" in content

    def test_upsert_handles_special_chars(self, tmp_path):
        from dotenv import dotenv_values

        env_file = tmp_path / ".env"
        _upsert_env_var(env_file, "PW", "abc #def")
        assert dotenv_values(env_file)["PW"] == "abc #def"

    def test_remove_existing_key(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("KEEP='yes'\nREMOVE='me'\n")
        _remove_env_var(env_file, "REMOVE")
        content = env_file.read_text()
        assert "KEEP=" in content
        assert "REMOVE" not in content

    def test_remove_missing_file(self, tmp_path):
        _remove_env_var(tmp_path / ".env", "KEY")

    def test_warns_group_readable(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o644)
        _warn_open_permissions(env_file)
        assert "permissões abertas" in capsys.readouterr().out

    def test_no_warn_restricted(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o600)
        _warn_open_permissions(env_file)
        assert capsys.readouterr().out == ""


class TestCheckKeyringAvailable:
    def test_available_with_real_backend(self):
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = MagicMock()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = type("FailKeyring", (), {})
        with patch.dict(
            "sys.modules",
            {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module},
        ):
            assert _check_keyring_available() is True

    def test_unavailable_with_fail_backend(self):
        fail_cls = type("Keyring", (), {})
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = fail_cls()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = fail_cls
        with patch.dict(
            "sys.modules",
            {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module},
        ):
            assert _check_keyring_available() is False


class TestSetupCertificate:
    def test_skip_on_empty_path(self, tmp_path, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda _: "")
        assert _setup_certificate(tmp_path) is False

    def test_file_not_found_reprompts(self, tmp_path, monkeypatch):
        inputs = iter(["/nonexistent/cert.pfx", ""])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        assert _setup_certificate(tmp_path) is False

    def test_invalid_cert_aborts(self, tmp_path, monkeypatch, capsys):
        fake_pfx = tmp_path / "bad.pfx"
        fake_pfx.write_bytes(b"not a real pfx")
        monkeypatch.setattr("builtins.input", lambda _: str(fake_pfx))
        monkeypatch.setattr("getpass.getpass", lambda _: "wrong-pass")
        assert _setup_certificate(tmp_path) is False
        assert "ERRO" in capsys.readouterr().out

    def test_successful_setup_dotenv(self, tmp_path, monkeypatch, test_pfx, capsys):
        from dotenv import dotenv_values

        pfx_path, pfx_password = test_pfx
        inputs = iter([pfx_path, "2"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_nfe.cli._check_keyring_available", lambda: False)

        with patch("emissor_nfe.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True

        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_PFX_PATH"] == pfx_path
        assert vals["CERT_PFX_PASSWORD"] == pfx_password
        assert "CNPJ: 12345678000199" in capsys.readouterr().out

    def test_successful_setup_keyring(self, tmp_path, monkeypatch, test_pfx):
        from dotenv import dotenv_values

        pfx_path, pfx_password = test_pfx
        inputs = iter([pfx_path, "1"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_nfe.cli._check_keyring_available", lambda: True)

        with patch("emissor_nfe.config._set_keyring_password", return_value=True) as mock_set:
            assert _setup_certificate(tmp_path) is True

        mock_set.assert_called_once_with(pfx_password)
        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_PFX_PATH"] == pfx_path
        assert "CERT_PFX_PASSWORD" not in vals

    def test_keyring_failure_falls_back_to_dotenv(self, tmp_path, monkeypatch, test_pfx, capsys):
        from dotenv import dotenv_values

        pfx_path, pfx_password = test_pfx
        inputs = iter([pfx_path, "1"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_nfe.cli._check_keyring_available", lambda: True)

        with patch("emissor_nfe.config._set_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True

        assert "Falha ao armazenar no keychain" in capsys.readouterr().out
        assert dotenv_values(tmp_path / ".env")["CERT_PFX_PASSWORD"] == pfx_password

    def test_no_store_option(self, tmp_path, monkeypatch, test_pfx, capsys):
        from dotenv import dotenv_values

        pfx_path, pfx_password = test_pfx
        inputs = iter([pfx_path, "3"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_nfe.cli._check_keyring_available", lambda: False)

        with patch("emissor_nfe.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True
        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_PFX_PATH"] == pfx_path
        assert "CERT_PFX_PASSWORD" not in vals
        assert "Senha não armazenada" in capsys.readouterr().out
