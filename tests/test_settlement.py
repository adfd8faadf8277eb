"""Tests for server/settlement.py -- payout routing for agreed, tied and twisted contracts."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import unittest
from decimal import Decimal
from server.settlement import Settlement, refund, quantize
from conftest import CREATOR, ACCEPTER, FEE_WALLET


def make_contract(**overrides):
    c = {
        "contract_id": "c1",
        "stake": "10",
        "odds": "2.5",
        "position_type": "buy",
        "creator_address": CREATOR,
        "accepter_address": ACCEPTER,
        "accepter_stake": "15",
        "additional_contract_creator": "1",
        "additional_contract_accepter": "1.5",
    }
    c.update(overrides)
    return c


def by_reason(result):
    return {(o["to"], o["reason"]): Decimal(o["amount"]) for o in result["outputs"]}


class TestQuantize(unittest.TestCase):
    def test_rounds_down(self):
        self.assertEqual(quantize(Decimal("0.123456789")), Decimal("0.12345678"))

    def test_exact(self):
        self.assertEqual(quantize(Decimal("1")), Decimal("1.00000000"))


class TestSettlementSetup(unittest.TestCase):
    def test_derives_missing_amounts(self):
        s = Settlement(make_contract(accepter_stake=None, additional_contract_creator=None,
                                     additional_contract_accepter=None))
        self.assertEqual(s.accepter_stake, Decimal("15"))
        self.assertEqual(s.creator_additional, Decimal("1"))
        self.assertEqual(s.accepter_additional, Decimal("1.5"))

    def test_sell_side_derivation(self):
        s = Settlement(make_contract(position_type="sell", odds="3", accepter_stake=None))
        self.assertEqual(s.accepter_stake, Decimal("5"))

    def test_requires_accepter(self):
        with self.assertRaises(ValueError):
            Settlement(make_contract(accepter_address=""))

    def test_requires_numbers(self):
        with self.assertRaises(ValueError):
            Settlement(make_contract(stake="ten"))

    def test_unknown_winner(self):
        with self.assertRaises(ValueError):
            Settlement(make_contract(), FEE_WALLET).settle("ySomeoneElse")


class TestAgreedSettlement(unittest.TestCase):
    def setUp(self):
        self.s = Settlement(make_contract(), FEE_WALLET)

    def test_creator_wins(self):
        r = self.s.settle(CREATOR)
        out = by_reason(r)
        self.assertEqual(r["kind"], "settle")
        self.assertEqual(out[(CREATOR, "winnings")], Decimal("24.5"))
        self.assertEqual(out[(CREATOR, "additional contract refund")], Decimal("1"))
        self.assertEqual(out[(ACCEPTER, "additional contract refund")], Decimal("1.5"))
        self.assertEqual(out[(FEE_WALLET, "platform fee")], Decimal("0.5"))

    def test_accepter_wins(self):
        out = by_reason(self.s.settle(ACCEPTER))
        self.assertEqual(out[(ACCEPTER, "winnings")], Decimal("24.5"))
        self.assertNotIn((CREATOR, "winnings"), out)

    def test_fee_is_two_percent_of_stakes(self):
        r = self.s.settle(CREATOR)
        self.assertEqual(Decimal(r["fee"]), self.s.total_stakes * Decimal("0.02"))

    def test_tie(self):
        r = self.s.settle("tie")
        out = by_reason(r)
        self.assertEqual(r["winner"], "tie")
        self.assertEqual(out[(CREATOR, "tie refund")], Decimal("9.9"))
        self.assertEqual(out[(ACCEPTER, "tie refund")], Decimal("14.85"))
        self.assertEqual(Decimal(r["fee"]), Decimal("0.25"))

    def test_outputs_sum_to_pot(self):
        for winner in (CREATOR, ACCEPTER, "tie"):
            r = self.s.settle(winner)
            total = sum(Decimal(o["amount"]) for o in r["outputs"])
            self.assertEqual(total, Decimal(r["pot"]), winner)


class TestTwistResolution(unittest.TestCase):
    def setUp(self):
        self.s = Settlement(make_contract(), FEE_WALLET)

    def test_creator_wins_loser_additional(self):
        r = self.s.resolve_twist(CREATOR)
        out = by_reason(r)
        self.assertEqual(r["kind"], "twist")
        # (10 + 15 + 1.5) * 0.98
        self.assertEqual(out[(CREATOR, "winnings")], Decimal("25.97"))
        self.assertEqual(out[(CREATOR, "additional contract refund")], Decimal("1"))
        self.assertNotIn((ACCEPTER, "additional contract refund"), out)
        self.assertEqual(Decimal(r["fee"]), Decimal("0.53"))

    def test_accepter_wins(self):
        out = by_reason(self.s.resolve_twist(ACCEPTER))
        # (15 + 10 + 1) * 0.98
        self.assertEqual(out[(ACCEPTER, "winnings")], Decimal("25.48"))
        self.assertEqual(out[(ACCEPTER, "additional contract refund")], Decimal("1.5"))

    def test_tie(self):
        out = by_reason(self.s.resolve_twist("tie"))
        self.assertEqual(out[(CREATOR, "tie refund")], Decimal("10.89"))
        self.assertEqual(out[(ACCEPTER, "tie refund")], Decimal("16.335"))

    def test_outputs_sum_to_pot(self):
        for winner in (CREATOR, ACCEPTER, "tie"):
            r = self.s.resolve_twist(winner)
            total = sum(Decimal(o["amount"]) for o in r["outputs"])
            self.assertEqual(total, Decimal(r["pot"]), winner)


class TestRounding(unittest.TestCase):
    def test_fee_absorbs_remainder(self):
        s = Settlement(make_contract(stake="1.23456789", odds="1.7", accepter_stake=None,
                                     additional_contract_creator=None, additional_contract_accepter=None),
                       FEE_WALLET)
        r = s.settle(CREATOR)
        for o in r["outputs"]:
            self.assertLessEqual(-Decimal(o["amount"]).as_tuple().exponent, 8, o)
        total = sum(Decimal(o["amount"]) for o in r["outputs"])
        self.assertEqual(total, Decimal(r["pot"]))


class TestRefund(unittest.TestCase):
    def test_refund(self):
        r = refund(make_contract(accepter_address=None))
        self.assertEqual(r["kind"], "refund")
        self.assertEqual(r["outputs"], [{"to": CREATOR, "amount": "11.00000000", "reason": "cancellation refund"}])
        self.assertEqual(r["fee"], "0")

    def test_refund_derives_additional(self):
        r = refund(make_contract(additional_contract_creator=None))
        self.assertEqual(r["pot"], "11.00000000")

    def test_refund_needs_stake(self):
        with self.assertRaises(ValueError):
            refund(make_contract(stake=None))


if __name__ == "__main__":
    unittest.main()
