"""Unit tests for ecrctl.py - command-line client."""

import json

import click
import pytest
import requests
from click.testing import CliRunner
from unittest.mock import MagicMock, patch

from ecrctl import EcrOperatorCLI, cli, load_manifests, resolve_plural

SERVER = "http://operator.test/api/v1"

REPOSITORY = {
    "kind": "Repository",
    "namespace": "default",
    "name": "app-images",
    "labels": {"team": "platform"},
    "spec": {"imageTagMutability": "IMMUTABLE"},
    "status": {"repositoryUri": "123456789012.dkr.ecr.eu-west-1.amazonaws.com/app-images"},
    "finalizers": [],
    "generation": 1,
    "deletion_timestamp": None,
    "created_at": "2026-01-15T10:30:00+00:00",
}


def response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body
    resp.text = json.dumps(body)
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Client Error"
        )
    return resp


def run(*args):
    return CliRunner().invoke(cli, ["--server", SERVER, *args])


class TestResolvePlural:
    @pytest.mark.parametrize(
        "value,plural",
        [
            ("repositories", "repositories"),
            ("Repository", "repositories"),
            ("repositorypolicy", "repositorypolicies"),
            ("RepositoryLifecycles", "repositorylifecycles"),
        ],
    )
    def test_resolves(self, value, plural):
        assert resolve_plural(value) == plural

    def test_unknown(self):
        with pytest.raises(click.BadParameter):
            resolve_plural("deployments")


class TestLoadManifests:
    def test_multi_document_yaml(self, tmp_path):
        path = tmp_path / "repos.yaml"
        path.write_text(
            "kind: Repository\nmetadata:\n  name: a\n---\n"
            "kind: Repository\nmetadata:\n  name: b\n---\n"
        )

        assert [m["metadata"]["name"] for m in load_manifests(str(path))] == ["a", "b"]

    def test_json_list(self, tmp_path):
        path = tmp_path / "repos.json"
        path.write_text(json.dumps([{"kind": "Repository"}]))

        assert load_manifests(str(path)) == [{"kind": "Repository"}]


class TestApply:
    """Tests for EcrOperatorCLI.apply."""

    MANIFEST = {
        "kind": "RepositoryPolicy",
        "metadata": {"name": "pull-access", "namespace": "team-a"},
        "spec": {"repositoryName": "app-images", "policyText": "{}"},
    }

    def test_creates(self):
        with patch("ecrctl.requests.request", return_value=response(201, {})) as req:
            message = EcrOperatorCLI(SERVER).apply(self.MANIFEST)

        assert message == "repositorypolicies/pull-access created"
        args, kwargs = req.call_args
        assert args == ("POST", f"{SERVER}/namespaces/team-a/repositorypolicies")
        assert kwargs["json"]["name"] == "pull-access"

    def test_conflict_replaces(self):
        with patch(
            "ecrctl.requests.request",
            side_effect=[response(409, {"detail": "exists"}), response(200, {})],
        ) as req:
            message = EcrOperatorCLI(SERVER).apply(self.MANIFEST)

        assert message == "repositorypolicies/pull-access configured"
        args, kwargs = req.call_args
        assert args == ("PUT", f"{SERVER}/namespaces/team-a/repositorypolicies/pull-access")
        assert kwargs["json"] == {"spec": self.MANIFEST["spec"], "labels": {}}

    def test_unknown_kind(self):
        with patch("ecrctl.requests.request") as req:
            assert EcrOperatorCLI(SERVER).apply({"kind": "Deployment"}) is None
        req.assert_not_called()

    def test_missing_name(self):
        with patch("ecrctl.requests.request") as req:
            assert EcrOperatorCLI(SERVER).apply({"kind": "Repository"}) is None
        req.assert_not_called()


class TestCommands:
    """Tests for the click commands."""

    def test_apply_command(self, tmp_path):
        path = tmp_path / "repo.yaml"
        path.write_text("kind: Repository\nmetadata:\n  name: app-images\n")

        with patch("ecrctl.requests.request", return_value=response(201, REPOSITORY)):
            result = run("apply", "-f", str(path))

        assert result.exit_code == 0
        assert "repositories/app-images created" in result.output

    def test_apply_failure_exit_code(self, tmp_path):
        path = tmp_path / "repo.yaml"
        path.write_text("kind: Repository\nmetadata:\n  name: app-images\n")

        with patch("ecrctl.requests.request", return_value=response(400, {"detail": "bad"})):
            result = run("apply", "-f", str(path))

        assert result.exit_code == 1

    def test_get_table(self):
        with patch("ecrctl.requests.request", return_value=response(200, [REPOSITORY])) as req:
            result = run("get", "repositories")

        assert result.exit_code == 0
        assert "app-images" in result.output
        assert REPOSITORY["status"]["repositoryUri"] in result.output
        assert req.call_args.args == ("GET", f"{SERVER}/namespaces/default/repositories")

    def test_get_all_namespaces(self):
        with patch("ecrctl.requests.request", return_value=response(200, [])) as req:
            result = run("get", "Repository", "-A")

        assert "No resources found." in result.output
        assert req.call_args.args == ("GET", f"{SERVER}/repositories")

    def test_get_json(self):
        with patch("ecrctl.requests.request", return_value=response(200, REPOSITORY)):
            result = run("get", "repositories", "app-images", "-o", "json")

        assert json.loads(result.output)[0]["name"] == "app-images"

    def test_describe_not_found(self):
        with patch(
            "ecrctl.requests.request",
            return_value=response(404, {"detail": "Repository default/x not found"}),
        ):
            result = run("describe", "repositories", "x")

        assert "Detail: Repository default/x not found" in result.output

    def test_delete(self):
        with patch(
            "ecrctl.requests.request",
            return_value=response(202, {"message": "Deletion requested"}),
        ) as req:
            result = run("delete", "repositories", "team/backend", "-n", "ci", "--yes")

        assert result.exit_code == 0
        assert "repositories/team/backend deletion requested" in result.output
        assert req.call_args.args == (
            "DELETE",
            f"{SERVER}/namespaces/ci/repositories/team/backend",
        )

    def test_watch(self):
        stream = MagicMock()
        stream.__enter__.return_value = stream
        stream.iter_lines.return_value = [
            "event: CREATED",
            'data: {"event_type": "CREATED", "kind": "Repository", '
            '"namespace": "default", "name": "app-images", '
            '"timestamp": "2026-01-15T10:30:00+00:00"}',
            "",
        ]

        with patch("ecrctl.requests.get", return_value=stream) as get:
            result = run("watch", "-k", "Repository")

        assert "CREATED" in result.output
        assert "Repository/default/app-images" in result.output
        assert get.call_args.kwargs["params"] == {"kind": "Repository"}
