"""
Errors and Error Codes
**********************

bsigner has several possible Exceptions with corresponding error codes.

:class:`~bsignerlib.devices.device.Device` operations, the device managers and
:mod:`~bsignerlib.app` functions will generally raise an exception that is a subclass of :class:`SignerError`.
Callers that need a serializable result can use :func:`handle_errors` which converts these exceptions into a dictionary
containing the error message and error code. These look like ``{"error": "<msg>", "code": <code>}``.
"""

from typing import Any, Dict, Iterator, Optional
from contextlib import contextmanager

# Error codes
DEVICE_CONN_ERROR = -3 #: Error connecting to the device, timeout or disconnect
BAD_ARGUMENT = -7 #: Bad, malformed, or conflicting argument was provided
UNAVAILABLE_ACTION = -9 #: Function is not available for this device
DEVICE_NOT_READY = -12 #: Device is not ready (locked, PIN required)
UNKNOWN_ERROR = -13 #: An unknown error occurred
ACTION_CANCELED = -14 #: Action was canceled by the user
INVALID_STATE = -19 #: Operation is not valid in the current state
UNSUPPORTED_INPUT = -20 #: Input type can not be signed by the selected backend
CONSISTENCY_ERROR = -21 #: Transactions or input data do not match each other

# Exceptions
class SignerError(Exception):
    """
    Generic exception type produced by bsigner
    Subclassed by specific Errors to have Exceptions that have specific error codes.

    Contains a message and error code.
    """
    def __init__(self, msg: str, code: int) -> None:
        """
        Create an exception with the message and error code

        :param msg: The error message
        :param code: The error code
        """
        Exception.__init__(self, msg)
        self.code = code
        self.msg = msg

    def get_code(self) -> int:
        """
        Get the error code for this Error

        :return: The error code
        """
        return self.code

    def get_msg(self) -> str:
        """
        Get the error message for this Error

        :return: The error message
        """
        return self.msg

    def __str__(self) -> str:
        return self.msg

class BadArgumentError(SignerError):
    """
    :class:`SignerError` for :data:`BAD_ARGUMENT`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, BAD_ARGUMENT)

class InvalidPathError(BadArgumentError):
    """
    :class:`BadArgumentError` raised for malformed derivation paths,
    out of range indices, unknown extended key prefixes and mutation of a frozen path.
    """

class InvalidStateError(SignerError):
    """
    :class:`SignerError` for :data:`INVALID_STATE`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, INVALID_STATE)

class UnavailableActionError(SignerError):
    """
    :class:`SignerError` for :data:`UNAVAILABLE_ACTION`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, UNAVAILABLE_ACTION)

class DeviceNotReadyError(SignerError):
    """
    :class:`SignerError` for :data:`DEVICE_NOT_READY`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, DEVICE_NOT_READY)

class DeviceFailureError(SignerError):
    """
    :class:`SignerError` for :data:`UNKNOWN_ERROR`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, UNKNOWN_ERROR)

class ActionCanceledError(SignerError):
    """
    :class:`SignerError` for :data:`ACTION_CANCELED`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, ACTION_CANCELED)

class DeviceConnectionError(SignerError):
    """
    :class:`SignerError` for :data:`DEVICE_CONN_ERROR`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, DEVICE_CONN_ERROR)

class UnsupportedInputError(SignerError):
    """
    :class:`SignerError` for :data:`UNSUPPORTED_INPUT`
    """
    def __init__(self, msg: str):
        """
        :param msg: The error message
        """
        SignerError.__init__(self, msg, UNSUPPORTED_INPUT)

class ConsistencyError(SignerError):
    def __init__(self, msg: str):
        SignerError.__init__(self, msg, CONSISTENCY_ERROR)

@contextmanager
def handle_errors(
    msg: Optional[str] = None,
    result: Optional[Dict[str, Any]] = None,
    code: int = UNKNOWN_ERROR,
) -> Iterator[Dict[str, Any]]:
    """
    Context manager to catch all Exceptions and SignerErrors to return them as dictionaries containing the error message and code.

    :param msg: Error message prefix. Attached to the beginning of each error message
    :param result: The dictionary to put the resulting error in
    :param code: The default error code to use for Exceptions
    """
    if result is None:
        result = {}

    if msg is None:
        msg = ""
    else:
        msg = msg + " "

    try:
        yield result
    except SignerError as e:
        result['error'] = msg + e.get_msg()
        result['code'] = e.get_code()
    except Exception as e:
        result['error'] = msg + str(e)
        result['code'] = code
