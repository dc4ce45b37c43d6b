import json

import pytest

from fleet_drift.application.detectors import (
    DETECTOR_TYPES,
    DockerBaseImageDetector,
    GoVersionDetector,
    NodeVersionDetector,
    PythonVersionDetector,
    build_detector,
    version_finding,
)
from fleet_drift.domain.models import DetectorKind, Severity
from tests.fakes import FakeReader, make_repo

REPO = make_repo("acme/svc")


def _reader(path, text):
    reader = FakeReader()
    reader.add("acme/svc", path, text)
    return reader


@pytest.mark.parametrize(
    "current, desired, present, severity",
    [
        ("1.19", "1.22", True, Severity.MEDIUM),
        ("2.0", "3.1", True, Severity.HIGH),
        ("3.11.1", "3.11.4", True, Severity.LOW),
        ("3.12", "3.11", False, Severity.LOW),
        ("1.22.0", "1.22", False, Severity.LOW),
    ],
)
def test_version_finding(current, desired, present, severity) -> None:
    finding = version_finding(current, desired)

    assert finding.present is present
    assert finding.severity is severity


def test_every_kind_is_registered() -> None:
    assert set(DETECTOR_TYPES) == set(DetectorKind)
    for kind in DetectorKind:
        assert build_detector(kind).kind is kind


def test_go_detector_reads_go_directive() -> None:
    finding = GoVersionDetector("1.22").detect(REPO, _reader("go.mod", "module x\n\ngo 1.20\n\nrequire y v1\n"))

    assert finding.present
    assert finding.current_value == "1.20"
    assert finding.desired_value == "1.22"


def test_missing_manifest_is_no_finding() -> None:
    assert GoVersionDetector().detect(REPO, FakeReader()) is None


def test_unparseable_manifest_is_no_finding() -> None:
    assert GoVersionDetector().detect(REPO, _reader("go.mod", "module x\n")) is None


def test_python_detector_ignores_comments() -> None:
    finding = PythonVersionDetector("3.11").detect(REPO, _reader(".python-version", "# pinned\n3.9.18\n"))

    assert finding.current_value == "3.9.18"
    assert finding.severity is Severity.MEDIUM


def test_python_detector_ignores_indented_comments() -> None:
    finding = PythonVersionDetector("3.11").detect(REPO, _reader(".python-version", "  # 3.8\n3.10.4\n"))

    assert finding.current_value == "3.10.4"


def test_node_detector_prefers_nvmrc() -> None:
    reader = _reader(".nvmrc", "v18.19.0\n")
    reader.add("acme/svc", "package.json", json.dumps({"engines": {"node": ">=20"}}))

    finding = NodeVersionDetector("20").detect(REPO, reader)

    assert finding.current_value == "18.19.0"
    assert finding.severity is Severity.HIGH


def test_node_detector_falls_back_to_engines() -> None:
    finding = NodeVersionDetector("20").detect(REPO, _reader("package.json", json.dumps({"engines": {"node": ">=20"}})))

    assert finding.present is False


def test_node_detector_without_engines_is_no_finding() -> None:
    assert NodeVersionDetector().detect(REPO, _reader("package.json", "{}")) is None


def test_docker_detector_reports_first_stale_base_image() -> None:
    dockerfile = (
        "FROM golang:1.22 AS build\n"
        "FROM --platform=linux/amd64 registry.local:5000/library/python:3.10-slim\n"
        "FROM scratch\n"
    )

    finding = DockerBaseImageDetector("python=3.12,golang=1.22").detect(REPO, _reader("Dockerfile", dockerfile))

    assert finding.present
    assert finding.current_value == "python:3.10-slim"
    assert finding.desired_value == "python:3.12"


def test_docker_detector_ignores_unversioned_tags() -> None:
    finding = DockerBaseImageDetector("node=20").detect(REPO, _reader("Dockerfile", "FROM node:lts\n"))

    assert finding is None


def test_detection_is_deterministic() -> None:
    reader = _reader("go.mod", "go 1.19\n")
    detector = GoVersionDetector("1.22")

    assert detector.detect(REPO, reader) == detector.detect(REPO, reader)
