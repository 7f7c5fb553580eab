"""zkLogin exception hierarchy."""

from __future__ import annotations


class ZkLoginError(Exception):
    """Base exception for all zkLogin errors."""


class NetworkFailure(ZkLoginError):
    """Raised when an external service (chain RPC, salt, prover) is unreachable or answers non-2xx."""


class ServiceTimeout(NetworkFailure):
    """Raised when an external service does not answer within the configured timeout."""


class MalformedToken(ZkLoginError):
    """Raised when an identity token is present but cannot be decoded."""


class StaleOrMissingSetup(ZkLoginError):
    """A redirect arrived with no pending login attempt.

    Benign: ordinary page loads and replayed callback URLs end up here. The
    redirect handler reports it as a no-op instead of raising it.
    """


class ProofServiceRejection(ZkLoginError):
    """Raised when the prover answers but refuses or returns an unusable proof."""


class SigningFailure(ZkLoginError):
    """Raised when any step of signing or submitting a transaction fails."""


class UnknownProvider(ZkLoginError):
    """Raised when a login is started for an OpenID provider that is not configured."""
