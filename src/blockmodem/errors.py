"""
Transfer error taxonomy.

Recoverable block errors trigger a retry inside the engine and are never
surfaced alone. Fatal errors end the session and reach the caller.
"""


class TransferError(Exception):
    """Base class for all block-transfer errors"""

    pass


class RecoverableBlockError(TransferError):
    """A single block or control byte was unusable; the engine retries"""

    pass


class MalformedBlock(RecoverableBlockError):
    """Sequence byte and its complement do not match"""

    pass


class ChecksumMismatch(RecoverableBlockError):
    """Block trailer does not match the payload"""

    pass


class UnrecognizedControl(RecoverableBlockError):
    """Byte is neither a block start, EOT nor CAN"""

    def __init__(self, value: int):
        super().__init__(f"Unrecognized control byte 0x{value:02x}")
        self.value = value


class ReadTimeout(RecoverableBlockError):
    """Per-block deadline elapsed before the expected bytes arrived"""

    pass


class FatalTransferError(TransferError):
    """The session cannot continue"""

    pass


class HandshakeTimeout(FatalTransferError):
    """No probe or no answer to our probes within the handshake deadline"""

    pass


class SynchronizationLost(FatalTransferError):
    """Peer sent a block that is neither the expected nor the last accepted one"""

    def __init__(self, received: int, expected: int, last_accepted: int):
        super().__init__(
            f"Synchronization lost: received block {received}, "
            f"expected {expected} (last accepted {last_accepted})"
        )
        self.received = received
        self.expected = expected
        self.last_accepted = last_accepted


class RetryLimitExceeded(FatalTransferError):
    """Consecutive error count reached the configured maximum"""

    pass


class PeerCancelled(FatalTransferError):
    """Peer sent the cancellation marker"""

    pass


class LocallyCancelled(FatalTransferError):
    """Local cancellation token was set"""

    pass
