"""
core/errors.py -- Typed outcomes shared by every layer of terminalpub.

Every failure the identity core can produce is one of the classes below.
Nothing in auth/, federation/ or cache/ exits the process or raises a bare
Exception for an expected condition -- callers catch these and decide what
to do (offer login, restart the device flow, drop an inbound activity).

Taxonomy:
  NotFoundError          -- no identity for key, no session, no device code
  ConflictError          -- key already bound to a different identity
  AlreadyBoundError      -- key already bound to the same identity (benign)
  AlreadyAuthorizedError -- device code was authorized before
  ExpiredError           -- device code or session past its expiry
  UntrustedRequestError  -- HTTP signature verification failed
  UpstreamError          -- provider call failed (network or non-2xx)
  UpstreamTimeoutError   -- provider call exceeded the bounded timeout
  MalformedInputError    -- bad key encoding, bad user code, bad header
  MalformedSignatureError -- unparseable Signature header (untrusted + malformed)

api/main.py maps each class to an HTTP status via http_status.

Layer rule: core/ is the kernel. This module imports nothing internal.
"""

from __future__ import annotations


class TerminalpubError(Exception):
    """Base class for all typed outcomes. `code` is machine-readable."""

    code: str = "error"
    http_status: int = 500

    def __init__(self, message: str = "", **context) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)


class NotFoundError(TerminalpubError):
    """The requested record does not exist."""

    code = "not_found"
    http_status = 404


class ConflictError(TerminalpubError):
    """Already held by someone else: a key bound to another identity, or a taken handle."""

    code = "conflict"
    http_status = 409


class AlreadyBoundError(TerminalpubError):
    """The key is already bound to this identity."""

    code = "already_bound"
    http_status = 200


class AlreadyAuthorizedError(TerminalpubError):
    """The device code has already been authorized."""

    code = "already_authorized"
    http_status = 409


class ExpiredError(TerminalpubError):
    """The code or session has expired. Restart the flow."""

    code = "expired"
    http_status = 410


class UntrustedRequestError(TerminalpubError):
    """The request signature could not be verified."""

    code = "untrusted"
    http_status = 401


class MalformedInputError(TerminalpubError):
    """The input could not be parsed."""

    code = "malformed_input"
    http_status = 400


class MalformedSignatureError(UntrustedRequestError, MalformedInputError):
    """The Signature header is missing required fields or cannot be parsed.

    Both an untrusted request and malformed input: callers catching either
    class see it, and no cryptographic work has been attempted.
    """

    code = "malformed_signature"
    http_status = 401


class UpstreamError(TerminalpubError):
    """The identity provider did not answer successfully. Try again."""

    code = "upstream_failure"
    http_status = 502


class UpstreamTimeoutError(UpstreamError):
    """The identity provider did not answer in time. Try again."""

    code = "upstream_timeout"
    http_status = 504
