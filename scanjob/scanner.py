"""
Vulnerability scanner invocation

The scanner is an external executable. ``GrypeScanner`` runs it against a
docker-archive and parses its JSON report; tests substitute their own
``ScannerPort``.
"""

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from .errors import ScanExecutionError, ScanOutputDecodeError

logger = logging.getLogger(__name__)

SEVERITIES = ('Critical', 'High', 'Medium', 'Low', 'Negligible', 'Unknown')


@dataclass
class VulnerabilityMatch:
    """One vulnerability matched against one package"""
    id: str
    severity: str = 'Unknown'
    package_name: Optional[str] = None
    package_version: Optional[str] = None
    package_type: Optional[str] = None
    fix_versions: List[str] = field(default_factory=list)
    fix_state: Optional[str] = None
    data_source: Optional[str] = None
    namespace: Optional[str] = None
    urls: List[str] = field(default_factory=list)
    description: Optional[str] = None

    @classmethod
    def from_grype(cls, match: Dict[str, Any]) -> 'VulnerabilityMatch':
        """
        Parse one entry of grype's ``matches`` array

        Args:
            match: Match object from grype's JSON output

        Returns:
            VulnerabilityMatch
        """
        vulnerability = match.get('vulnerability') or {}
        artifact = match.get('artifact') or {}
        fix = vulnerability.get('fix') or {}
        return cls(
            id=vulnerability.get('id', 'unknown'),
            severity=vulnerability.get('severity') or 'Unknown',
            package_name=artifact.get('name'),
            package_version=artifact.get('version'),
            package_type=artifact.get('type'),
            fix_versions=list(fix.get('versions') or []),
            fix_state=fix.get('state'),
            data_source=vulnerability.get('dataSource'),
            namespace=vulnerability.get('namespace'),
            urls=list(vulnerability.get('urls') or []),
            description=vulnerability.get('description'),
        )

    @property
    def is_fixable(self) -> bool:
        return self.fix_state == 'fixed' and bool(self.fix_versions)


@dataclass
class ScanResult:
    """Raw scanner output plus the decoded report"""
    raw_output: bytes
    document: Any = None
    matches: List[VulnerabilityMatch] = field(default_factory=list)

    def severity_counts(self) -> Dict[str, int]:
        """Number of matches per severity, every known severity present"""
        counts = Counter(match.severity.capitalize() for match in self.matches)
        summary = {severity: counts.pop(severity, 0) for severity in SEVERITIES}
        summary.update(counts)
        return summary


class ScannerPort(ABC):
    """Runs a vulnerability scan over a docker-archive"""

    @abstractmethod
    def scan(self, archive_path: Union[str, Path]) -> ScanResult:
        """
        Scan an archive

        Args:
            archive_path: Path to the docker-archive tarball

        Returns:
            ScanResult

        Raises:
            ScanExecutionError: If the scanner fails to run or exits non-zero
            ScanOutputDecodeError: If its output cannot be decoded
        """
        pass


def parse_grype_output(output: bytes) -> ScanResult:
    """
    Decode grype's JSON report

    Grype may print progress or warnings ahead of the report, and its log
    lines open with a bracketed timestamp such as ``[0000]``. Every line that
    starts with ``{`` or ``[`` is tried in turn until one decodes to a JSON
    object or array.

    Args:
        output: Combined stdout/stderr of the scanner

    Returns:
        ScanResult with ``document`` and ``matches`` filled in

    Raises:
        ScanOutputDecodeError: If no JSON document can be decoded
    """
    text = output.decode('utf-8', errors='replace')
    decoder = json.JSONDecoder()
    document = None
    last_error = None
    for start in _json_candidates(text):
        try:
            document, end = decoder.raw_decode(text, start)
        except ValueError as e:
            last_error = e
            continue
        # A log line such as "[1] done" decodes as an array but has trailing text
        trailing = text[end:].split('\n', 1)[0]
        if isinstance(document, (dict, list)) and not trailing.strip():
            break
        document = None

    if document is None:
        if last_error is not None:
            raise ScanOutputDecodeError(f"failed to decode scanner output: {last_error}", output=output)
        raise ScanOutputDecodeError('scanner output contains no JSON document', output=output)

    if isinstance(document, dict):
        raw_matches = document.get('matches') or []
    else:
        raw_matches = document

    matches = [VulnerabilityMatch.from_grype(m) for m in raw_matches if isinstance(m, dict)]
    return ScanResult(raw_output=output, document=document, matches=matches)


def _json_candidates(text: str) -> Iterator[int]:
    """Offsets of lines that open with ``{`` or ``[``, in order"""
    offset = 0
    for line in text.splitlines(keepends=True):
        stripped = line.lstrip()
        if stripped.startswith(('{', '[')):
            yield offset + (len(line) - len(stripped))
        offset += len(line)


class GrypeScanner(ScannerPort):
    """Runs the grype CLI as a subprocess"""

    def __init__(self, binary: str = 'grype', output_format: str = 'json',
                 extra_args: Sequence[str] = (), timeout: Optional[float] = None):
        """
        Initialize grype scanner

        Args:
            binary: Scanner executable (default: "grype")
            output_format: Value for ``-o`` (default: "json")
            extra_args: Additional command line arguments
            timeout: Seconds before the scan is killed (default: no limit)
        """
        self.binary = binary
        self.output_format = output_format
        self.extra_args = list(extra_args)
        self.timeout = timeout

    def command(self, archive_path: Union[str, Path]) -> List[str]:
        return [self.binary, str(archive_path), '-o', self.output_format, *self.extra_args]

    def scan(self, archive_path: Union[str, Path]) -> ScanResult:
        cmd = self.command(archive_path)
        logger.info("Scanning %s", archive_path)
        logger.debug("Running %s", ' '.join(cmd))

        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ScanExecutionError(f"scanner binary not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise ScanExecutionError(
                f"scanner timed out after {self.timeout}s", output=e.output or b''
            ) from e
        except OSError as e:
            raise ScanExecutionError(f"failed to run scanner: {e}") from e

        output = completed.stdout or b''
        logger.debug("Scanner output: %s", output.decode('utf-8', errors='replace'))

        if completed.returncode != 0:
            raise ScanExecutionError(
                f"error running grype: exit status {completed.returncode}: "
                f"{output.decode('utf-8', errors='replace').strip()[-2000:]}",
                output=output,
                returncode=completed.returncode,
            )

        if self.output_format != 'json':
            return ScanResult(raw_output=output)
        return parse_grype_output(output)
