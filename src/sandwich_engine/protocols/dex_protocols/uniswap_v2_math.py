"""
Uniswap V2 Math Implementation.

Implements the constant product formula (x * y = k) used by Uniswap V2 and its
forks, plus the three-swap sandwich simulation built on top of it.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = Decimal("10000")
GOLDEN_RATIO = (Decimal(5).sqrt() - 1) / 2


@dataclass(frozen=True)
class SandwichSimulation:
    """Outcome of front-run, victim swap and back-run against one pool."""
    frontrun_in: Decimal
    frontrun_out: Decimal
    victim_out: Decimal
    backrun_out: Decimal
    victim_in: Decimal = Decimal("0")

    @property
    def gross_profit(self) -> Decimal:
        """Token-in gained by the front-run/back-run pair, swap fees included."""
        return self.backrun_out - self.frontrun_in


class UniswapV2Math:
    """
    Constant product AMM math for Uniswap V2 style pools.

    All amounts are Decimal; callers floor to integers only when encoding
    on-chain calls.
    """

    def __init__(self, fee_bps: int = 30):
        """
        Initialize Uniswap V2 math.

        Args:
            fee_bps: Swap fee in basis points (default 30 = 0.3%)
        """
        self.fee_bps = fee_bps
        self.fee_multiplier = (BPS_DENOMINATOR - Decimal(fee_bps)) / BPS_DENOMINATOR

    def calculate_amount_out(self,
                             amount_in: Decimal,
                             reserve_in: Decimal,
                             reserve_out: Decimal) -> Decimal:
        """
        Calculate output amount for a given input.

        Formula: amountOut = (amountIn * g * reserveOut) / (reserveIn + amountIn * g)
        where g = 1 - fee.
        """
        amount_in, reserve_in, reserve_out = Decimal(amount_in), Decimal(reserve_in), Decimal(reserve_out)
        if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
            return Decimal("0")

        amount_in_with_fee = amount_in * self.fee_multiplier
        return (amount_in_with_fee * reserve_out) / (reserve_in + amount_in_with_fee)

    def calculate_amount_in(self,
                            amount_out: Decimal,
                            reserve_in: Decimal,
                            reserve_out: Decimal) -> Optional[Decimal]:
        """
        Calculate required input for a desired output.

        Returns None when the output cannot be reached (it would drain the pool).
        """
        amount_out, reserve_in, reserve_out = Decimal(amount_out), Decimal(reserve_in), Decimal(reserve_out)
        if amount_out <= 0 or reserve_in <= 0 or reserve_out <= 0 or amount_out >= reserve_out:
            return None

        return (reserve_in * amount_out) / ((reserve_out - amount_out) * self.fee_multiplier)

    def calculate_price_impact(self,
                               amount_in: Decimal,
                               reserve_in: Decimal,
                               reserve_out: Decimal) -> Decimal:
        """
        Calculate the price impact of a trade.

        Price impact = 1 - (post_trade_price / pre_trade_price), prices in
        output per input.
        """
        amount_in, reserve_in, reserve_out = Decimal(amount_in), Decimal(reserve_in), Decimal(reserve_out)
        if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
            return Decimal("0")

        pre_trade_price = reserve_out / reserve_in
        amount_out = self.calculate_amount_out(amount_in, reserve_in, reserve_out)
        if amount_out <= 0:
            return Decimal("1")

        post_trade_price = (reserve_out - amount_out) / (reserve_in + amount_in)
        return Decimal("1") - (post_trade_price / pre_trade_price)

    def get_spot_price(self,
                       reserve_in: Decimal,
                       reserve_out: Decimal,
                       include_fee: bool = True) -> Decimal:
        """Current spot price in output tokens per input token."""
        reserve_in, reserve_out = Decimal(reserve_in), Decimal(reserve_out)
        if reserve_in <= 0 or reserve_out <= 0:
            return Decimal("0")

        spot_price = reserve_out / reserve_in
        if include_fee:
            spot_price = spot_price * self.fee_multiplier
        return spot_price

    def simulate_sandwich(self,
                          reserve_in: Decimal,
                          reserve_out: Decimal,
                          frontrun_in: Decimal,
                          victim_in: Decimal,
                          victim_amount_out: Optional[Decimal] = None) -> SandwichSimulation:
        """
        Simulate front-run buy, victim buy and back-run sell in one pool.

        Step 1 buys token-out with `frontrun_in`, step 2 applies the victim's
        swap on the moved reserves, step 3 sells everything bought in step 1.

        With `victim_amount_out` set the victim is an exact-output swap:
        `victim_in` is its maximum input and it pays only what the moved
        reserves require. A victim that would exceed its maximum reverts and
        leaves the reserves untouched (victim_in and victim_out are 0).
        """
        reserve_in, reserve_out = Decimal(reserve_in), Decimal(reserve_out)
        frontrun_in, victim_in = Decimal(frontrun_in), Decimal(victim_in)

        frontrun_out = self.calculate_amount_out(frontrun_in, reserve_in, reserve_out)
        reserve_in += frontrun_in
        reserve_out -= frontrun_out

        if victim_amount_out is None:
            victim_out = self.calculate_amount_out(victim_in, reserve_in, reserve_out)
        else:
            victim_out = Decimal(victim_amount_out)
            required_in = self.calculate_amount_in(victim_out, reserve_in, reserve_out)
            if required_in is None or required_in > victim_in:
                victim_in, victim_out = Decimal("0"), Decimal("0")
            else:
                victim_in = required_in
        reserve_in += victim_in
        reserve_out -= victim_out

        backrun_out = self.calculate_amount_out(frontrun_out, reserve_out, reserve_in)

        return SandwichSimulation(
            frontrun_in=frontrun_in,
            frontrun_out=frontrun_out,
            victim_out=victim_out,
            backrun_out=backrun_out,
            victim_in=victim_in
        )

    def max_frontrun_for_min_out(self,
                                 reserve_in: Decimal,
                                 reserve_out: Decimal,
                                 victim_in: Decimal,
                                 victim_min_out: Decimal) -> Optional[Decimal]:
        """
        Largest front-run that still lets the victim receive `victim_min_out`.

        Treats the post-front-run reserves as lying on x * y = k, which slightly
        understates the bound because the front-run fee stays in the pool.
        Solving  m * x1 * (x1 + g*v) = g*v*k  for the post-front-run reserve x1:

            x1 = (-m*g*v + sqrt((m*g*v)^2 + 4*m*g*v*k)) / (2*m)

        Returns None when the victim declared no minimum (no bound), and 0 when
        the victim's tolerance is already exhausted.
        """
        reserve_in, reserve_out = Decimal(reserve_in), Decimal(reserve_out)
        victim_in, victim_min_out = Decimal(victim_in), Decimal(victim_min_out)

        if victim_min_out <= 0:
            return None
        if reserve_in <= 0 or reserve_out <= 0 or victim_in <= 0:
            return Decimal("0")

        k = reserve_in * reserve_out
        mgv = victim_min_out * self.fee_multiplier * victim_in
        discriminant = mgv * mgv + 4 * mgv * k
        post_reserve_in = (-mgv + discriminant.sqrt()) / (2 * victim_min_out)

        return max(Decimal("0"), post_reserve_in - reserve_in)

    def optimize_frontrun(self,
                          reserve_in: Decimal,
                          reserve_out: Decimal,
                          victim_in: Decimal,
                          upper_bound: Decimal,
                          cost_rate: Decimal = Decimal("0"),
                          iterations: int = 80,
                          victim_amount_out: Optional[Decimal] = None) -> Decimal:
        """
        Front-run size in [0, upper_bound] maximising sandwich profit.

        The objective is gross profit minus `cost_rate` per unit of front-run
        (e.g. a flash-settlement fee). It is unimodal in the front-run size for a
        constant product pool, so a golden-section search converges to the
        maximiser. `victim_amount_out` models an exact-output victim as in
        `simulate_sandwich`.
        """
        upper_bound = Decimal(upper_bound)
        if upper_bound <= 0:
            return Decimal("0")

        def profit(amount: Decimal) -> Decimal:
            simulation = self.simulate_sandwich(
                reserve_in, reserve_out, amount, victim_in, victim_amount_out
            )
            return simulation.gross_profit - amount * cost_rate

        best = _golden_section_max(profit, Decimal("0"), upper_bound, iterations)

        # The boundary is often the optimum when the victim's slippage binds
        if profit(upper_bound) >= profit(best):
            return upper_bound
        return best


def _golden_section_max(func: Callable[[Decimal], Decimal],
                        low: Decimal,
                        high: Decimal,
                        iterations: int) -> Decimal:
    a, b = low, high
    c = b - GOLDEN_RATIO * (b - a)
    d = a + GOLDEN_RATIO * (b - a)
    fc, fd = func(c), func(d)

    for _ in range(iterations):
        if fc >= fd:
            b, d, fd = d, c, fc
            c = b - GOLDEN_RATIO * (b - a)
            fc = func(c)
        else:
            a, c, fc = c, d, fd
            d = a + GOLDEN_RATIO * (b - a)
            fd = func(d)

    return (a + b) / 2
