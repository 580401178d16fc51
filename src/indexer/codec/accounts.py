"""Bonding curve account decoding and address derivation.

Account layout (after the 8-byte account discriminator):
creator, mint, virtual_sol, virtual_tokens, real_sol, real_tokens,
total_supply, graduated, created_at, bump, sol_vault_bump, token_vault_bump.
"""

from dataclasses import dataclass

from solders.pubkey import Pubkey

from indexer.codec.cursor import PUBKEY_SIZE, ByteCursor
from indexer.exceptions import AccountDecodeError, EventDecodeError

ACCOUNT_DISCRIMINATOR_SIZE = 8
BONDING_CURVE_SEED = b"bonding_curve"
BONDING_CURVE_ACCOUNT_SIZE = ACCOUNT_DISCRIMINATOR_SIZE + 2 * PUBKEY_SIZE + 5 * 8 + 1 + 8 + 3


@dataclass(frozen=True)
class BondingCurveAccount:
    """On-chain bonding curve state, raw units."""

    creator: str
    mint: str
    virtual_sol_reserves: int
    virtual_token_reserves: int
    real_sol_reserves: int
    real_token_reserves: int
    token_total_supply: int
    graduated: bool
    created_at: int


def decode_bonding_curve(data: bytes) -> BondingCurveAccount:
    """Decode raw account data.

    Raises AccountDecodeError when the data is shorter than the layout.
    """
    cursor = ByteCursor(data, offset=ACCOUNT_DISCRIMINATOR_SIZE)
    try:
        cursor.require(BONDING_CURVE_ACCOUNT_SIZE)
        return BondingCurveAccount(
            creator=cursor.read_pubkey(),
            mint=cursor.read_pubkey(),
            virtual_sol_reserves=cursor.read_u64(),
            virtual_token_reserves=cursor.read_u64(),
            real_sol_reserves=cursor.read_u64(),
            real_token_reserves=cursor.read_u64(),
            token_total_supply=cursor.read_u64(),
            graduated=cursor.read_bool(),
            created_at=cursor.read_i64(),
        )
    except EventDecodeError as e:
        raise AccountDecodeError(str(e)) from e


def bonding_curve_address(mint: str, program_id: str) -> str:
    """Derive the curve PDA for ``mint`` (seeds: "bonding_curve", mint)."""
    address, _bump = Pubkey.find_program_address(
        [BONDING_CURVE_SEED, bytes(Pubkey.from_string(mint))],
        Pubkey.from_string(program_id),
    )
    return str(address)
