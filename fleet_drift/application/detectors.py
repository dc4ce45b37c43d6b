"""Drift detectors: one implementation per DetectorKind, all sharing one contract."""

import json
import logging
import re
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from fleet_drift.domain.errors import DetectorError
from fleet_drift.domain.models import DetectorKind, Finding, Severity
from fleet_drift.domain.ports import ContentReader
from fleet_drift.domain.repository import Repository

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def parse_version(value: str) -> Tuple[int, int, int]:
    """
    Parse the first dotted version number found in value.

    Raises:
        DetectorError: If value holds no version number
    """
    match = _VERSION_RE.search(value or "")
    if not match:
        raise DetectorError(f"No version number in {value!r}")
    return tuple(int(part) if part is not None else 0 for part in match.groups())


def version_finding(current: str, desired: str) -> Finding:
    """Compare two versions; drift is present when current is older than desired."""
    current_v = parse_version(current)
    desired_v = parse_version(desired)
    if current_v >= desired_v:
        return Finding(current_value=current, desired_value=desired, present=False)
    if current_v[0] < desired_v[0]:
        severity = Severity.HIGH
    elif current_v[1] < desired_v[1]:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return Finding(current_value=current, desired_value=desired, severity=severity)


class Detector:
    """
    Base detector contract.

    Subclasses implement evaluate(); detect() turns a DetectorError (content
    present but unusable) into "no finding". Errors reading content from the
    hosting API propagate to the caller.
    """

    kind: DetectorKind
    title: str = ""
    languages: FrozenSet[str] = frozenset()
    remediation_branch_prefix: Optional[str] = None
    default_desired: str = ""

    def __init__(self, desired_value: Optional[str] = None):
        self.desired_value = desired_value or self.default_desired

    def detect(self, repo: Repository, reader: ContentReader) -> Optional[Finding]:
        try:
            return self.evaluate(repo, reader)
        except DetectorError as e:
            logger.info(f"{self.kind.value}: no finding for {repo.full_name} ({e})")
            return None

    def evaluate(self, repo: Repository, reader: ContentReader) -> Optional[Finding]:
        raise NotImplementedError

    def issue_title(self, finding: Finding) -> str:
        return f"{self.title}: {finding.current_value} is older than {finding.desired_value}"

    @staticmethod
    def read_text(reader: ContentReader, repo: Repository, path: str) -> Optional[str]:
        content = reader.read_file(repo.owner, repo.name, path)
        if content is None:
            return None
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DetectorError(f"{path} is not valid UTF-8") from e


class GoVersionDetector(Detector):
    kind = DetectorKind.GO_VERSION
    title = "Outdated Go toolchain"
    languages = frozenset({"Go"})
    remediation_branch_prefix = "renovate/go"
    default_desired = "1.22"

    _GO_DIRECTIVE = re.compile(r"^go\s+(\d+(?:\.\d+){0,2})\s*$", re.MULTILINE)

    def evaluate(self, repo: Repository, reader: ContentReader) -> Optional[Finding]:
        text = self.read_text(reader, repo, "go.mod")
        if text is None:
            return None
        match = self._GO_DIRECTIVE.search(text)
        if not match:
            raise DetectorError("go.mod has no go directive")
        return version_finding(match.group(1), self.desired_value)


class PythonVersionDetector(Detector):
    kind = DetectorKind.PYTHON_VERSION
    title = "Outdated Python version"
    languages = frozenset({"Python"})
    remediation_branch_prefix = "renovate/python"
    default_desired = "3.11"

    def evaluate(self, repo: Repository, reader: ContentReader) -> Optional[Finding]:
        text = self.read_text(reader, repo, ".python-version")
        if text is None:
            return None
        lines = [line.strip() for line in text.splitlines() if line.strip() and not line.strip().startswith("#")]
        if not lines:
            raise DetectorError(".python-version is empty")
        return version_finding(lines[0], self.desired_value)


class NodeVersionDetector(Detector):
    kind = DetectorKind.NODE_VERSION
    title = "Outdated Node.js version"
    languages = frozenset({"JavaScript", "TypeScript"})
    remediation_branch_prefix = "renovate/node"
    default_desired = "20"

    def evaluate(self, repo: Repository, reader: ContentReader) -> Optional[Finding]:
        nvmrc = self.read_text(reader, repo, ".nvmrc")
        if nvmrc is not None and nvmrc.strip():
            return version_finding(nvmrc.strip().lstrip("v"), self.desired_value)

        package_json = self.read_text(reader, repo, "package.json")
        if package_json is None:
            return None
        try:
            manifest = json.loads(package_json)
        except ValueError as e:
            raise DetectorError("package.json is not valid JSON") from e
        engines = manifest.get("engines") if isinstance(manifest, dict) else None
        if not isinstance(engines, dict) or not engines.get("node"):
            return None
        return version_finding(str(engines["node"]), self.desired_value)


class DockerBaseImageDetector(Detector):
    """
    Flags Dockerfile base images older than a minimum tag.

    The desired value maps image names to minimum tags, e.g.
    "python=3.12,node=20,golang=1.22".
    """

    kind = DetectorKind.DOCKER_BASE_IMAGE
    title = "Stale Docker base image"
    languages = frozenset({"Dockerfile"})
    default_desired = "python=3.12,node=20,golang=1.22"

    _FROM_LINE = re.compile(r"^\s*FROM\s+(?:--platform=\S+\s+)?(\S+)", re.IGNORECASE | re.MULTILINE)

    def __init__(self, desired_value: Optional[str] = None):
        super().__init__(desired_value)
        self.minimum_tags = self.parse_minimums(self.desired_value)

    @staticmethod
    def parse_minimums(value: str) -> Dict[str, str]:
        minimums: Dict[str, str] = {}
        for item in value.split(","):
            image, sep, tag = item.strip().partition("=")
            if sep and image and tag:
                minimums[image.strip()] = tag.strip()
        return minimums

    def evaluate(self, repo: Repository, reader: ContentReader) -> Optional[Finding]:
        text = self.read_text(reader, repo, "Dockerfile")
        if text is None:
            return None
        checked: List[Finding] = []
        for reference in self._FROM_LINE.findall(text):
            image, _, tag = reference.split("@", 1)[0].rpartition(":")
            if not image or "/" in tag:
                # untagged, possibly with a registry port
                continue
            short_name = image.rsplit("/", 1)[-1]
            minimum = self.minimum_tags.get(short_name)
            if minimum is None or not tag:
                continue
            try:
                finding = version_finding(tag, minimum)
            except DetectorError:
                logger.debug(f"{repo.full_name}: skipping unversioned base image {reference}")
                continue
            checked.append(
                Finding(
                    current_value=f"{short_name}:{tag}",
                    desired_value=f"{short_name}:{minimum}",
                    severity=finding.severity,
                    present=finding.present,
                )
            )
        if not checked:
            return None
        drifted = [f for f in checked if f.present]
        return drifted[0] if drifted else checked[0]


DETECTOR_TYPES: Dict[DetectorKind, Callable[[Optional[str]], Detector]] = {
    DetectorKind.GO_VERSION: GoVersionDetector,
    DetectorKind.PYTHON_VERSION: PythonVersionDetector,
    DetectorKind.NODE_VERSION: NodeVersionDetector,
    DetectorKind.DOCKER_BASE_IMAGE: DockerBaseImageDetector,
}


def build_detector(kind: DetectorKind, desired_value: Optional[str] = None) -> Detector:
    """Look up and instantiate the detector registered for kind."""
    return DETECTOR_TYPES[kind](desired_value)
