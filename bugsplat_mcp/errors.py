"""
Error taxonomy for the attachment subsystem.

Every failure raised below the MCP boundary is one of these. The server
converts them into an ErrorResponse payload; nothing is retried.
"""


class BugSplatMCPError(Exception):
    """Base class for all user-facing failures."""
    code = "error"


class ConfigurationError(BugSplatMCPError):
    """Required configuration (database, credentials) is missing or invalid"""
    code = "configuration_error"


class CrashNotFoundError(BugSplatMCPError):
    """Crash id does not exist in the database"""
    code = "not_found"


class AttachmentTooLargeError(BugSplatMCPError):
    """Attachment bundle exceeds the download ceiling"""
    code = "attachment_too_large"


class AttachmentFileNotFoundError(BugSplatMCPError):
    """Requested file is not part of the extracted bundle"""
    code = "file_not_found"


class BundleDownloadError(BugSplatMCPError):
    """Network failure while querying the API or fetching the bundle"""
    code = "network_error"


class BundleExtractionError(BugSplatMCPError):
    """Bundle archive is malformed or could not be extracted"""
    code = "extraction_error"


class ImageTooLargeToFitError(BugSplatMCPError):
    """Image could not be shrunk below the response budget"""
    code = "image_too_large_to_fit"


class UnsupportedAttachmentTypeError(BugSplatMCPError):
    """Attachment media type cannot be returned through MCP"""
    code = "unsupported_attachment_type"
