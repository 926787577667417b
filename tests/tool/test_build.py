"""Tests for the build command."""

import pathlib

import pytest
from syrupy.assertion import SnapshotAssertion
import yaml

from query_operator.tool.query_operator import main

from .. import db_instance, http_instance


def write_manifests(path: pathlib.Path, docs: list[dict]) -> None:  # type: ignore[type-arg]
    path.write_text(yaml.dump_all(docs, sort_keys=False, explicit_start=True))


def test_build_reports_status(
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
    snapshot: SnapshotAssertion,
) -> None:
    """Test instances are reconciled and their status is printed."""
    write_manifests(
        tmp_path / "instances.yaml",
        [
            db_instance(secret_name="missing"),
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "unrelated", "namespace": "default"},
            },
        ],
    )
    output = tmp_path / "out.yaml"

    main(["build", str(tmp_path), "--output-file", str(output)])

    assert output.read_text() == ""
    assert capsys.readouterr().err == snapshot


def test_build_missing_path(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test building a path that does not exist."""
    with pytest.raises(SystemExit) as exc:
        main(["build", str(tmp_path / "missing")])
    assert exc.value.code == 1
    assert "Path does not exist" in capsys.readouterr().err


def test_build_invalid_gvk_pattern(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test an invalid watched kinds flag."""
    write_manifests(tmp_path / "instances.yaml", [http_instance()])
    with pytest.raises(SystemExit):
        main(["build", str(tmp_path), "--gvk-pattern", "nonsense"])
    assert "No valid watched kinds" in capsys.readouterr().err
