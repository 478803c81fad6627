"""
Access authorization: proof construction and the fetch-keys/decrypt round trip.

The authorization proof is the BCS encoding of an unsigned
``TransactionKind`` calling ``{package}::{module}::seal_approve(id, scope)``.
Key servers dry-run it against the ledger; nothing is ever submitted.
"""

from typing import List, Optional, Sequence

from .artifact import EncryptedArtifact
from .bcs import MoveCall, OwnedObjectArg, ProgrammableTransaction, PureArg, SharedObjectArg, encode_bytes
from .errors import InputValidation
from .gateway import EncryptionGateway
from .ledger import LedgerClient
from .logging import get_logger
from .policy import normalize_object_id, policy_id_hex
from .session import SessionCredential

logger = get_logger()

DEFAULT_APPROVE_MODULE = "whitelist"
DEFAULT_APPROVE_FUNCTION = "seal_approve"


class AccessAuthorizer:
    """
    Builds authorization proofs and drives key release plus decryption.

    Args:
        gateway: Gateway holding the key cache
        ledger: Read-only source of scope object metadata
        approve_module: Move module exposing the approval entry point
        approve_function: Approval entry point name
    """

    def __init__(
        self,
        gateway: EncryptionGateway,
        ledger: LedgerClient,
        approve_module: str = DEFAULT_APPROVE_MODULE,
        approve_function: str = DEFAULT_APPROVE_FUNCTION,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.approve_module = approve_module
        self.approve_function = approve_function

    def _scope_arg(self, scope_object_id: str):
        scope = self.ledger.get_object(scope_object_id)
        if scope.is_shared:
            return SharedObjectArg(scope.object_id, scope.initial_shared_version, mutable=False)
        return OwnedObjectArg(scope.object_id, scope.version, scope.digest)

    def build_authorization_proof(self, package_id: str, scope_object_id: str, policy_id: bytes) -> bytes:
        """
        Build unsigned proof bytes for one PolicyId.

        Raises:
            InputValidation: On malformed ids
            LedgerError: If the scope object cannot be read
        """
        return self.build_batch_proof(package_id, scope_object_id, [policy_id])

    def build_batch_proof(self, package_id: str, scope_object_id: str, policy_ids: Sequence[bytes]) -> bytes:
        """Build one proof transaction with an approval call per PolicyId."""
        if not policy_ids:
            raise InputValidation("At least one PolicyId is required", field="policy_ids")
        package_id = normalize_object_id(package_id)

        tx = ProgrammableTransaction()
        tx.inputs.append(self._scope_arg(scope_object_id))
        for policy_id in policy_ids:
            tx.inputs.append(PureArg(encode_bytes(bytes(policy_id))))
            tx.commands.append(MoveCall(
                package=package_id,
                module=self.approve_module,
                function=self.approve_function,
                arguments=(len(tx.inputs) - 1, 0),
            ))
        return tx.to_bytes()

    def fetch_keys(
        self,
        policy_ids: List[bytes],
        proof: bytes,
        credential: SessionCredential,
        threshold: int,
        server_ids: Optional[List[str]] = None,
    ) -> None:
        self.gateway.fetch_keys(policy_ids, proof, credential, threshold, server_ids=server_ids)

    def authorize_and_decrypt(
        self,
        artifact: EncryptedArtifact,
        package_id: str,
        scope_object_id: str,
        credential: SessionCredential,
    ) -> bytes:
        """
        Build the proof, fetch keys, then decrypt.

        Decryption is never attempted if the key fetch fails.
        """
        if normalize_object_id(package_id) != artifact.package_id:
            raise InputValidation(
                "Artifact was encrypted for a different package",
                field="package_id", expected=artifact.package_id,
            )
        logger.debug("Authorizing decryption", policy_id=policy_id_hex(artifact.policy_id))
        proof = self.build_authorization_proof(package_id, scope_object_id, artifact.policy_id)
        self.fetch_keys([artifact.policy_id], proof, credential, artifact.threshold,
                        server_ids=artifact.share_servers)
        return self.gateway.decrypt(artifact, None, credential)
