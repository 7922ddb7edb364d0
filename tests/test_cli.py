"""Tests for the relshare CLI."""

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from releaselib import __version__
from releaselib.cli import app
from releaselib.exceptions import NothingToShareError, ReleaseNotActivatedError
from releaselib.manifest_registry import ManifestTooLargeError
from releaselib.manifest_service import ManifestService

runner = CliRunner()


@pytest.fixture
def service():
    svc = MagicMock()
    with patch.object(ManifestService, "from_settings", return_value=svc):
        yield svc


class TestTopLevel:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "manifest" in result.output

    def test_activate(self, service):
        activated = MagicMock(
            activation_id="act-1",
            manifest_etag="etag",
            case_count=2,
            specimen_count=3,
            artifact_count=6,
        )
        service.activate_release.return_value = activated

        result = runner.invoke(app, ["activate", "R001"])

        assert result.exit_code == 0
        service.activate_release.assert_called_once_with("R001")
        assert "act-1" in result.output

    def test_activate_error_exits_non_zero(self, service):
        service.activate_release.side_effect = NothingToShareError("No data types enabled")
        result = runner.invoke(app, ["activate", "R001"])
        assert result.exit_code == 1

    def test_activate_oversized_manifest_exits_non_zero(self, service):
        service.activate_release.side_effect = ManifestTooLargeError("Encoded manifest is too large")
        result = runner.invoke(app, ["activate", "R001"])
        assert result.exit_code == 1
        assert not isinstance(result.exception, ManifestTooLargeError)

    def test_deactivate(self, service):
        service.deactivate_release.return_value = False
        result = runner.invoke(app, ["deactivate", "R001"])
        assert result.exit_code == 0
        assert "not activated" in result.output

    def test_setup(self, service):
        result = runner.invoke(app, ["setup"])
        assert result.exit_code == 0
        service.registry.create_table_if_not_exists.assert_called_once()


class TestManifestCommands:
    def test_tsv_to_stdout(self, service):
        service.get_active_tsv.return_value = "CASEID\nC1\n"
        result = runner.invoke(app, ["manifest", "tsv", "R001", "--columns", "caseId"])
        assert result.exit_code == 0
        assert result.output == "CASEID\nC1\n"
        service.get_active_tsv.assert_called_once_with("R001", ["caseId"], signers=None)

    def test_tsv_presigned_adds_signed_column(self, service):
        service.get_active_tsv.return_value = "X\n"
        with patch("releaselib.presign.build_presigner_registry") as build:
            result = runner.invoke(app, ["manifest", "tsv", "R001", "--presign"])
        assert result.exit_code == 0
        columns = service.get_active_tsv.call_args.args[1]
        assert columns[-1] == "objectStoreSigned"
        assert service.get_active_tsv.call_args.kwargs["signers"] is build.return_value

    def test_tsv_to_file(self, service, tmp_path):
        service.get_active_tsv.return_value = "CASEID\nC1\n"
        out = tmp_path / "manifest.tsv"
        result = runner.invoke(app, ["manifest", "tsv", "R001", "--output", str(out)])
        assert result.exit_code == 0
        assert out.read_text() == "CASEID\nC1\n"

    def test_not_activated(self, service):
        service.get_active_tsv.side_effect = ReleaseNotActivatedError("R001")
        result = runner.invoke(app, ["manifest", "tsv", "R001"])
        assert result.exit_code == 1

    def test_bucket_key_protocols(self, service):
        service.get_active_bucket_key_manifest.return_value = {"id": "R001", "objects": []}
        result = runner.invoke(app, ["manifest", "bucket-key", "R001", "-p", "s3", "-p", "gs", "-c", "objectStoreUrl"])
        assert result.exit_code == 0
        service.get_active_bucket_key_manifest.assert_called_once_with("R001", ["s3", "gs"])
        assert result.output == "OBJECTSTOREURL\n"

    def test_htsget_json(self, service):
        service.get_active_htsget_manifest.return_value = {"id": "R001", "reads": {}, "variants": {}, "cases": []}
        result = runner.invoke(app, ["manifest", "htsget", "R001"])
        assert result.exit_code == 0
        assert json.loads(result.output)["id"] == "R001"

    def test_htsget_publish(self, service):
        service.publish_htsget_manifest.return_value = {
            "location": {"bucket": "temp-bucket", "key": "htsget-manifests/R001"},
            "maxAge": 86400,
        }
        result = runner.invoke(app, ["manifest", "htsget-publish", "R001"])
        assert result.exit_code == 0
        assert "htsget-manifests/R001" in result.output


class TestAccessPointCommands:
    def test_generate(self, service):
        with patch("releaselib.access_point_service.AccessPointService") as ap_service:
            ap_service.return_value.create_access_point_templates.return_value = "https://t/install.template"
            result = runner.invoke(app, ["access-point", "generate", "R001", "--account-id", "999999999999"])
        assert result.exit_code == 0
        ap_service.return_value.create_access_point_templates.assert_called_once_with(
            "R001", "999999999999", None
        )
        assert "install.template" in result.output

    def test_tsv(self, service):
        with patch("releaselib.access_point_service.AccessPointService") as ap_service:
            ap_service.return_value.get_access_point_bucket_key_tsv.return_value = "OBJECTSTOREURL\ns3://alias/k\n"
            result = runner.invoke(app, ["access-point", "tsv", "R001"])
        assert result.exit_code == 0
        assert result.output == "OBJECTSTOREURL\ns3://alias/k\n"
