"""Settlement arithmetic for Settle In DASH contracts.

Computes who gets paid what out of a contract's multisig when the parties
agree on a result, when they tie, and when the oracle resolves a twist.
The Dash backend turns the resulting outputs into an unsigned transaction;
nothing here moves funds.

All amounts are Decimal DASH quantized to 1 duff. Payouts round down and
the fee absorbs the rounding remainder so outputs always sum to the pot.
"""

from decimal import Decimal, ROUND_DOWN

from protocol import (
    ADDITIONAL_CONTRACT_RATE, DASH_QUANTUM, TIE,
    WIN_PAYOUT_RATE, TIE_REFUND_RATE,
)
from validation import to_decimal, expected_accepter_stake


def quantize(amount: Decimal) -> Decimal:
    """Round down to 8 decimal places (1 duff)."""
    return amount.quantize(DASH_QUANTUM, rounding=ROUND_DOWN)


class Settlement:
    """Payout routing for a single accepted contract.

    Reads stakes from the stored contract row. The accepter stake and both
    additional contracts fall back to their derived values when the row
    doesn't carry them. Every input is cut to whole duffs.
    """

    def __init__(self, contract: dict, fee_recipient: str = ""):
        stake = to_decimal(contract.get("stake"))
        odds = to_decimal(contract.get("odds"))
        if stake is None or odds is None:
            raise ValueError("Contract has no valid stake/odds")
        self.contract_id = contract.get("contract_id", "")
        self.creator = contract.get("creator_address", "")
        self.accepter = contract.get("accepter_address", "")
        if not self.accepter:
            raise ValueError("Contract has no accepter")
        self.fee_recipient = fee_recipient

        self.creator_stake = quantize(stake)
        accepter_stake = to_decimal(contract.get("accepter_stake"))
        if accepter_stake is None:
            accepter_stake = expected_accepter_stake(stake, odds, contract.get("position_type", ""))
        self.accepter_stake = quantize(accepter_stake)

        creator_add = to_decimal(contract.get("additional_contract_creator"))
        accepter_add = to_decimal(contract.get("additional_contract_accepter"))
        self.creator_additional = quantize(creator_add if creator_add is not None
                                           else stake * ADDITIONAL_CONTRACT_RATE)
        self.accepter_additional = quantize(accepter_add if accepter_add is not None
                                            else accepter_stake * ADDITIONAL_CONTRACT_RATE)

    @property
    def total_stakes(self) -> Decimal:
        return self.creator_stake + self.accepter_stake

    def _side(self, winner: str) -> str:
        if winner == TIE:
            return TIE
        if winner == self.creator:
            return "creator"
        if winner == self.accepter:
            return "accepter"
        raise ValueError(f"Winner must be '{TIE}', the creator or the accepter, got {winner!r}")

    def _result(self, kind: str, winner: str, pot: Decimal, payouts: list[dict], details: str) -> dict:
        paid = sum((p["amount"] for p in payouts), Decimal(0))
        fee = pot - paid
        outputs = [p for p in payouts if p["amount"] > 0]
        if fee > 0:
            outputs.append({"to": self.fee_recipient, "amount": fee, "reason": "platform fee"})
        return {
            "kind": kind,
            "contract_id": self.contract_id,
            "winner": winner,
            "pot": str(pot),
            "fee": str(fee),
            "fee_recipient": self.fee_recipient,
            "outputs": [{**o, "amount": str(o["amount"])} for o in outputs],
            "details": details,
        }

    def settle(self, winner: str) -> dict:
        """Both parties agreed on the result.

        Winner takes both stakes less 2%. A tie refunds each stake less 1%.
        Additional contracts go back to their owners in full either way.
        """
        side = self._side(winner)
        pot = self.total_stakes + self.creator_additional + self.accepter_additional
        refunds = [
            {"to": self.creator, "amount": quantize(self.creator_additional), "reason": "additional contract refund"},
            {"to": self.accepter, "amount": quantize(self.accepter_additional), "reason": "additional contract refund"},
        ]
        if side == TIE:
            payouts = [
                {"to": self.creator, "amount": quantize(self.creator_stake * TIE_REFUND_RATE), "reason": "tie refund"},
                {"to": self.accepter, "amount": quantize(self.accepter_stake * TIE_REFUND_RATE), "reason": "tie refund"},
            ]
            return self._result("settle", TIE, pot, payouts + refunds,
                                "settled as tie, stakes refunded less 1% fee")
        payout = quantize(self.total_stakes * WIN_PAYOUT_RATE)
        payouts = [{"to": winner, "amount": payout, "reason": "winnings"}]
        return self._result("settle", winner, pot, payouts + refunds,
                            f"{side} wins both stakes less 2% fee")

    def resolve_twist(self, winner: str) -> dict:
        """The oracle ruled on a disputed contract.

        The loser forfeits their additional contract to the winner. A tie
        refunds stake plus additional contract to each side less 1%.
        """
        side = self._side(winner)
        pot = self.total_stakes + self.creator_additional + self.accepter_additional
        if side == TIE:
            payouts = [
                {"to": self.creator, "reason": "tie refund",
                 "amount": quantize((self.creator_stake + self.creator_additional) * TIE_REFUND_RATE)},
                {"to": self.accepter, "reason": "tie refund",
                 "amount": quantize((self.accepter_stake + self.accepter_additional) * TIE_REFUND_RATE)},
            ]
            return self._result("twist", TIE, pot, payouts,
                                "twist inconclusive, stakes and additional contracts refunded less 1% fee")
        if side == "creator":
            base = self.creator_stake + self.accepter_stake + self.accepter_additional
            own_additional = self.creator_additional
        else:
            base = self.accepter_stake + self.creator_stake + self.creator_additional
            own_additional = self.accepter_additional
        payouts = [
            {"to": winner, "amount": quantize(base * WIN_PAYOUT_RATE), "reason": "winnings"},
            {"to": winner, "amount": quantize(own_additional), "reason": "additional contract refund"},
        ]
        return self._result("twist", winner, pot, payouts,
                            f"twist resolved for {side}, including loser's stake and additional contract, less 2% fee")


def refund(contract: dict) -> dict:
    """Cancelled before acceptance: the creator gets back everything they funded."""
    stake = to_decimal(contract.get("stake"))
    if stake is None:
        raise ValueError("Contract has no valid stake")
    additional = to_decimal(contract.get("additional_contract_creator"))
    if additional is None:
        additional = stake * ADDITIONAL_CONTRACT_RATE
    amount = quantize(stake) + quantize(additional)
    return {
        "kind": "refund",
        "contract_id": contract.get("contract_id", ""),
        "winner": "",
        "pot": str(amount),
        "fee": "0",
        "fee_recipient": "",
        "outputs": [{"to": contract.get("creator_address", ""), "amount": str(amount), "reason": "cancellation refund"}],
        "details": "contract cancelled, stake and additional contract refunded",
    }
