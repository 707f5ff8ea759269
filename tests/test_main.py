from click.testing import CliRunner
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from certifika.main import main
from certifika.util import load_private_key


def test_plugins():
    result = CliRunner().invoke(main, ["plugins"])
    assert result.exit_code == 0
    assert "WebrootProvisioner (webroot)" in result.output
    assert "DummyProvisioner (dummy)" in result.output
    assert "FileStore (file)" in result.output
    assert "VaultStore (vault)" in result.output


def test_generate_account_key(tmp_path):
    runner = CliRunner()

    result = runner.invoke(main, ["generate-account-key", str(tmp_path / "ec.key")])
    assert result.exit_code == 0
    assert isinstance(load_private_key(tmp_path / "ec.key"), ec.EllipticCurvePrivateKey)

    result = runner.invoke(main, ["generate-account-key", "-k", "rsa", str(tmp_path / "rsa.key")])
    assert result.exit_code == 0
    assert isinstance(load_private_key(tmp_path / "rsa.key"), rsa.RSAPrivateKey)


def test_config_file(tmp_path):
    config = tmp_path / "certifika.yml"
    config.write_text("client:\n  unknown: 1\n")

    result = CliRunner().invoke(main, ["--config-file", str(config), "plugins"])
    assert result.exit_code != 0


def test_issue_rejects_unusable_key(tmp_path):
    key_file = tmp_path / "example.key"
    key_file.write_text("-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n")

    result = CliRunner().invoke(main, ["issue", "example.com", "--key-file", str(key_file)])

    assert result.exit_code == 2
    assert "No usable private key" in result.output
