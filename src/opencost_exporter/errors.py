class ExportError(Exception):
    """
    base class for every failure an export run can end with.
    The runner fills in stage once it knows where the error surfaced.
    """

    # transient failures worth another attempt with the same parameters
    retryable: "bool" = False

    def __init__(self, message: "str", stage: "str" = "") -> "None":
        super().__init__(message)
        self.message = message
        self.stage = stage

    @property
    def kind(self) -> "str":
        return type(self).__name__


class TransportError(ExportError):
    """
    network failure or timeout while talking to the allocation API,
    or a response body that could not be decoded.
    """

    retryable = True


class ApiError(ExportError):
    """
    the allocation API answered with a non-success status code.
    """

    def __init__(self, message: "str", code: "int | None" = None, stage: "str" = "") -> "None":
        super().__init__(message, stage)
        self.code = code


class FlattenError(ExportError):
    """
    the response does not follow the nested mapping contract.
    """


class DependencyUnavailable(ExportError):
    """
    the requested output format needs an encoder that is not installed.
    """


class AuthError(ExportError):
    """
    the storage credential was rejected.
    """


class UploadError(ExportError):
    """
    transient storage failure, distinct from AuthError.
    """

    retryable = True
