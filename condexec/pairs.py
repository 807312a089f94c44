"""Stop-loss / take-profit pair coordination.

The coordinator holds the relation ``pair_id -> (stop_loss_id, take_profit_id)``
and nothing else; the legs themselves live in the order store. When one leg
fires, ``resolve_on_fire`` cancels the other under the coordinator lock, so at
most one leg of a pair ever executes.
"""

import threading
import time
from typing import Callable, Dict, List, Optional

from .errors import InvalidTransition, OrderNotFound, StopOrderNotFound
from .logging_setup import logger
from .order_state import ConditionalOrder, OrderStatus, PairStatus, StopOrderPair
from .store import ConditionalOrderStore


class PairCoordinator:
    def __init__(self, store: ConditionalOrderStore, *, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._pairs: Dict[str, StopOrderPair] = {}
        self._by_order: Dict[str, str] = {}
        for pair in store.list_pairs():
            self._publish(pair)

    def _publish(self, pair: StopOrderPair) -> None:
        self._pairs[pair.pair_id] = pair
        self._by_order[pair.stop_loss_order_id] = pair.pair_id
        self._by_order[pair.take_profit_order_id] = pair.pair_id

    @staticmethod
    def _copy(pair: StopOrderPair) -> StopOrderPair:
        return StopOrderPair.from_dict(pair.to_dict())

    def create_pair(self, pair_id: str, stop_loss: ConditionalOrder, take_profit: ConditionalOrder) -> StopOrderPair:
        """Store both legs, then publish the pair. Any failure deletes whatever was stored."""
        saved: List[str] = []
        pair = StopOrderPair(
            pair_id=pair_id,
            stop_loss_order_id=stop_loss.order_id,
            take_profit_order_id=take_profit.order_id,
            symbol=stop_loss.symbol,
            created_at=self._clock(),
        )
        with self._lock:
            try:
                for leg in (stop_loss, take_profit):
                    self.store.save(leg)
                    saved.append(leg.order_id)
                self.store.save_pair(pair)
            except Exception as e:
                logger.error(f"Pair creation failed, rolling back | pair_id={pair_id} saved={saved} error={e}")
                for order_id in saved:
                    try:
                        self.store.delete(order_id)
                    except OrderNotFound:
                        logger.warning(f"Rollback found leg already gone | pair_id={pair_id} order_id={order_id}")
                raise
            self._publish(pair)
        logger.info(
            f"Stop order pair created | pair_id={pair_id} stop_loss={stop_loss.order_id} take_profit={take_profit.order_id}"
        )
        return self._copy(pair)

    def get(self, pair_id: str) -> StopOrderPair:
        with self._lock:
            pair = self._pairs.get(pair_id)
            if pair is None:
                raise StopOrderNotFound(f"stop order pair not found: {pair_id}")
            return self._copy(pair)

    def pair_for(self, order_id: str) -> Optional[StopOrderPair]:
        with self._lock:
            pair_id = self._by_order.get(order_id)
            return self._copy(self._pairs[pair_id]) if pair_id else None

    def list_pairs(self, active_only: bool = False) -> List[StopOrderPair]:
        with self._lock:
            return [
                self._copy(p) for p in self._pairs.values()
                if not active_only or p.status is PairStatus.ACTIVE
            ]

    def _cancel_leg(self, pair: StopOrderPair, order_id: str) -> bool:
        try:
            self.store.transition_status(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, updated_at=self._clock())
            return True
        except InvalidTransition as e:
            logger.warning(f"Pair leg already advanced | pair_id={pair.pair_id} order_id={order_id} error={e}")
        except OrderNotFound:
            logger.warning(f"Pair leg missing from store | pair_id={pair.pair_id} order_id={order_id}")
        return False

    def _resolve(self, pair: StopOrderPair, winning_order_id: Optional[str]) -> None:
        pair.status = PairStatus.RESOLVED
        pair.resolved_at = self._clock()
        pair.winning_order_id = winning_order_id
        self.store.save_pair(pair)

    def resolve_on_fire(self, order_id: str) -> Optional[str]:
        """Cancel the sibling of a leg that just fired and resolve the pair.

        Returns the sibling's order id when it was cancelled, else None (no
        pair, pair already resolved, or sibling no longer PENDING).
        """
        with self._lock:
            pair_id = self._by_order.get(order_id)
            if pair_id is None:
                return None
            pair = self._pairs[pair_id]
            if pair.status is not PairStatus.ACTIVE:
                return None
            sibling = pair.sibling_of(order_id)
            cancelled = self._cancel_leg(pair, sibling)
            self._resolve(pair, order_id)
        logger.info(f"Pair resolved | pair_id={pair_id} fired={order_id} cancelled_sibling={sibling if cancelled else None}")
        return sibling if cancelled else None

    def resolve_on_cancel(self, order_id: str) -> Optional[str]:
        """A leg was cancelled by the user: cancel its sibling too."""
        with self._lock:
            pair_id = self._by_order.get(order_id)
            if pair_id is None:
                return None
            pair = self._pairs[pair_id]
            if pair.status is not PairStatus.ACTIVE:
                return None
            sibling = pair.sibling_of(order_id)
            cancelled = self._cancel_leg(pair, sibling)
            self._resolve(pair, None)
        logger.info(f"Pair cancelled | pair_id={pair_id} cancelled={order_id} sibling={sibling}")
        return sibling if cancelled else None

    def cancel_pair(self, pair_id: str) -> List[str]:
        """Cancel every PENDING leg of the pair; returns the cancelled ids."""
        with self._lock:
            pair = self._pairs.get(pair_id)
            if pair is None:
                raise StopOrderNotFound(f"stop order pair not found: {pair_id}")
            if pair.status is not PairStatus.ACTIVE:
                return []
            cancelled = [
                oid for oid in (pair.stop_loss_order_id, pair.take_profit_order_id)
                if self._cancel_leg(pair, oid)
            ]
            self._resolve(pair, None)
        logger.info(f"Pair cancelled | pair_id={pair_id} cancelled={cancelled}")
        return cancelled
