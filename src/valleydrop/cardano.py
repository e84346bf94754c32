"""
valleydrop/cardano.py

cardano-cli adapter.

Implements SettlementTool by shelling out to cardano-cli with
trio.run_process:

    build     query utxo at the source address, then `transaction build`
              with every UTxO as input and the outputs as --tx-out
    sign      `transaction sign` with the signing key file
    submit    `transaction submit`
    fetch_id  `transaction txid`

Every failure raises SettlementFailure carrying cardano-cli's stdout and
stderr verbatim. One CardanoCli instance is bound to one funding address,
so settlement calls for an address never interleave.

Also generates the single-use deposit wallet of a session.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import trio

from .config import DEFAULT_NETWORK
from .errors import SettlementFailure
from .session import FundingWallet
from .settlement import SettlementTool, TxOutput

logger = logging.getLogger("valleydrop.cardano")

CARDANO_CLI = "cardano-cli"
DEFAULT_ERA = "conway"


@dataclass
class BuiltTx:
    """Artifact of a build step: an unsigned body file on disk."""
    body_file: str
    outputs: List[TxOutput]
    change_address: str
    tx_ins: List[str]


@dataclass
class SignedTx:
    """Artifact of a sign step."""
    signed_file: str
    body_file: str


def network_args(network: str) -> List[str]:
    """'mainnet' -> ['--mainnet']; '1097911063' -> ['--testnet-magic', '1097911063']"""
    if network in ("", "mainnet"):
        return ["--mainnet"]
    magic = network.split(":", 1)[-1]
    if not magic.isdigit():
        raise ValueError(f"Invalid network {network!r}: expected 'mainnet' or a testnet magic")
    return ["--testnet-magic", magic]


def parse_txid(output: str) -> str:
    """cardano-cli prints either a bare hash or {"txhash": ...}."""
    text = output.strip()
    if text.startswith("{"):
        try:
            return str(json.loads(text)["txhash"])
        except (ValueError, KeyError) as e:
            raise SettlementFailure(f"Unexpected txid output: {e}", step="fetch_id", stdout=output)
    return text


class CardanoCli(SettlementTool):
    """
    SettlementTool backed by the cardano-cli binary.

    Example:
        cli = CardanoCli(source_address=session.funding_address,
                         work_dir=session.wallet_dir)
        artifact = await cli.build([TxOutput("addr1...", 5_000_000)], session.funding_address)
        signed = await cli.sign(artifact, session.signing_key_file)
        await cli.submit(signed)
        tx_id = await cli.fetch_id(signed)
    """

    def __init__(
        self,
        source_address: str = "",
        work_dir: str = ".",
        network: str = DEFAULT_NETWORK,
        socket_path: str = "",
        binary: str = CARDANO_CLI,
        era: str = DEFAULT_ERA,
    ):
        self.source_address = source_address
        self.work_dir = work_dir
        self.network = network
        self.socket_path = socket_path
        self.binary = binary
        self.era = era

    def _net(self) -> List[str]:
        return network_args(self.network)

    def _socket(self) -> List[str]:
        return ["--socket-path", self.socket_path] if self.socket_path else []

    def _tmp_path(self, prefix: str, suffix: str) -> str:
        os.makedirs(self.work_dir, exist_ok=True)
        return os.path.join(self.work_dir, f"{prefix}_{time.time_ns()}.{suffix}")

    async def run(self, step: str, *args: str) -> str:
        """Run cardano-cli, returning stdout or raising SettlementFailure."""
        cmd = [self.binary, *args]
        logger.info(f"{step}: {' '.join(cmd)}")
        try:
            result = await trio.run_process(
                cmd, capture_stdout=True, capture_stderr=True, check=False
            )
        except OSError as e:
            raise SettlementFailure(f"{step}: cannot run {self.binary}: {e}", step=step)

        stdout = result.stdout.decode("utf-8", errors="replace")
        stderr = result.stderr.decode("utf-8", errors="replace")
        if result.returncode != 0:
            raise SettlementFailure(
                f"{step}: exit status {result.returncode}",
                step=step,
                stdout=stdout,
                stderr=stderr,
            )
        return stdout

    # ------------------------------------------------------------------------
    # SettlementTool
    # ------------------------------------------------------------------------

    async def query_utxos(self, address: str) -> List[str]:
        """UTxO references ("txhash#ix") held by an address."""
        out = await self.run(
            "utxo query", "query", "utxo",
            "--address", address,
            *self._net(), *self._socket(),
            "--out-file", "/dev/stdout",
            "--output-json",
        )
        try:
            utxos = json.loads(out or "{}")
        except ValueError as e:
            raise SettlementFailure(f"utxo query: bad JSON: {e}", step="utxo query", stdout=out)
        return sorted(utxos.keys())

    async def build(self, outputs: Sequence[TxOutput], change_address: str) -> BuiltTx:
        source = self.source_address or change_address
        tx_ins = await self.query_utxos(source)
        if not tx_ins:
            raise SettlementFailure(f"build: no UTxOs found at address {source}", step="build")

        body_file = self._tmp_path("txbody", "raw")
        args = [
            self.era, "transaction", "build",
            "--change-address", change_address,
            *self._net(), *self._socket(),
            "--out-file", body_file,
        ]
        for tx_in in tx_ins:
            args += ["--tx-in", tx_in]
        for output in outputs:
            args += ["--tx-out", output.to_cli_arg()]

        await self.run("build", *args)
        return BuiltTx(body_file, list(outputs), change_address, tx_ins)

    async def sign(self, artifact: BuiltTx, key: str) -> SignedTx:
        if not key:
            raise SettlementFailure("sign: no signing key file", step="sign")
        signed_file = self._tmp_path("txsigned", "signed")
        await self.run(
            "sign", self.era, "transaction", "sign",
            "--tx-body-file", artifact.body_file,
            "--signing-key-file", key,
            *self._net(),
            "--out-file", signed_file,
        )
        return SignedTx(signed_file, artifact.body_file)

    async def submit(self, signed: SignedTx) -> str:
        return await self.run(
            "submit", self.era, "transaction", "submit",
            *self._net(), *self._socket(),
            "--tx-file", signed.signed_file,
        )

    async def fetch_id(self, signed: SignedTx) -> str:
        out = await self.run(
            "fetch_id", self.era, "transaction", "txid",
            "--tx-file", signed.signed_file,
        )
        return parse_txid(out)

    # ------------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------------

    async def generate_wallet(self, directory: str, label: str) -> FundingWallet:
        """Create a payment key pair and address under directory."""
        os.makedirs(directory, mode=0o700, exist_ok=True)
        vkey = os.path.join(directory, f"{label}.vkey")
        skey = os.path.join(directory, f"{label}.skey")
        addr_file = os.path.join(directory, f"{label}.addr")

        await self.run(
            "key-gen", "address", "key-gen",
            "--verification-key-file", vkey,
            "--signing-key-file", skey,
        )
        await self.run(
            "address build", "address", "build",
            "--payment-verification-key-file", vkey,
            "--out-file", addr_file,
            *self._net(),
        )
        with open(addr_file, "r", encoding="utf-8") as f:
            address = f.read().strip()

        logger.info(f"Generated funding wallet {address} in {directory}")
        return FundingWallet(
            address=address,
            signing_key_file=skey,
            verification_key_file=vkey,
            wallet_dir=directory,
        )


def cli_for_session(
    source_address: str,
    work_dir: str,
    network: str = DEFAULT_NETWORK,
    socket_path: str = "",
    binary: Optional[str] = None,
) -> CardanoCli:
    return CardanoCli(
        source_address=source_address,
        work_dir=work_dir,
        network=network,
        socket_path=socket_path,
        binary=binary or CARDANO_CLI,
    )
