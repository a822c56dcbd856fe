"""Exception hierarchy for the verifier package.

None of these reach callers of ``VerificationOrchestrator.verify``; they
are raised by collaborators and converted to result values at the
orchestrator boundary.
"""


class VerifierError(Exception):
    """Base class for all verifier errors."""


class ProbeError(VerifierError):
    """The external holdings check could not complete."""


class StorageError(VerifierError):
    """Queue state could not be read from or written to storage."""


class IdentityFormatError(VerifierError):
    """An identity (proxy) line could not be parsed."""
