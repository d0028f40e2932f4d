"""
Error types raised by the scan job pipeline

Every stage raises one of these and the worker turns the first one it sees
into the job's failure message, so ``str(error)`` must read well on its own.
"""


class ScanJobError(Exception):
    """Base class for all pipeline errors"""


class ConfigError(ScanJobError):
    """Worker configuration is incomplete or malformed"""


class InvalidJobMessage(ScanJobError):
    """A queue message could not be decoded into a task request"""


class MissingParameter(ScanJobError):
    """A required job parameter is absent"""


class InvalidReference(ScanJobError):
    """An artifact reference could not be parsed"""

    def __init__(self, reference: str, reason: str):
        super().__init__(f"invalid artifact reference {reference!r}: {reason}")
        self.reference = reference
        self.reason = reason


class UnsupportedRegistry(ScanJobError):
    """The registry kind is not one of ghcr, ecr or acr"""

    def __init__(self, kind: str):
        super().__init__(f"unsupported registry type: {kind}")
        self.kind = kind


class MissingCredential(ScanJobError):
    """A credential field required by the registry kind is empty"""

    def __init__(self, registry: str, fields):
        names = ', '.join(fields)
        super().__init__(f"{registry} requires {names}")
        self.registry = registry
        self.fields = tuple(fields)


class AuthProviderError(ScanJobError):
    """A cloud provider or token endpoint refused to issue a credential"""


class NoCredentialForHost(ScanJobError):
    """The job holds no credential for the host being contacted"""

    def __init__(self, host: str):
        super().__init__(f"no credentials for host {host}")
        self.host = host


class RegistryFetchError(ScanJobError):
    """Fetching content from the registry failed"""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ManifestDecodeError(ScanJobError):
    """The manifest document is not valid manifest JSON"""


class UnsupportedMediaType(ScanJobError):
    """A descriptor carries a media type outside the allow-list"""

    def __init__(self, media_type: str, digest: str):
        super().__init__(f"unsupported media type {media_type!r} for {digest}")
        self.media_type = media_type
        self.digest = digest


class BlobFetchError(ScanJobError):
    """A blob needed for the archive is missing from the content store"""


class ArchiveWriteError(ScanJobError):
    """Writing the archive or one of its members to disk failed"""


class ScanExecutionError(ScanJobError):
    """The scanner could not be run or exited with a non-zero status"""

    def __init__(self, message: str, output: bytes = b'', returncode=None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class ScanOutputDecodeError(ScanJobError):
    """The scanner's output is not the structured document requested"""

    def __init__(self, message: str, output: bytes = b''):
        super().__init__(message)
        self.output = output


class QueuePublishError(ScanJobError):
    """Publishing a progress or result message failed"""
