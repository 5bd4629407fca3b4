import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from commission_schedule import MAX_DEPTH
from errors import ReferralError
from models import AffiliateRef


def register_referral(child_id, parent_id, ref):
    """
    register that `parent_id` referred affiliate `child_id`.
    ref: dict mapping child_id -> parent_id
    rules:
      - an affiliate can only have ONE referrer (cannot be overwritten)
      - adding the edge child -> parent must NOT create a cycle
    """
    if child_id == parent_id:
        raise ReferralError(f"Affiliate {child_id} cannot refer themselves.")

    # 1) child cannot already have a referrer
    if ref.get(child_id) is not None:
        raise ReferralError(f"Affiliate {child_id} already has a referrer ({ref[child_id]}).")

    # 2) cycle check: walk UP from parent, we must never hit child
    current = parent_id
    while current is not None:
        if current == child_id:
            raise ReferralError(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        current = ref.get(current)

    # 3) child is referred by parent
    ref[child_id] = parent_id


def get_ancestor_chain(affiliate_id, ref, max_levels=MAX_DEPTH) -> List[AffiliateRef]:
    """
    affiliate_id is the customer's direct referrer, so it sits at depth 1.
    walk up ref (child -> parent) collecting at most max_levels ancestors.
    the chain just ends where the tree does; no None padding.
    """
    chain = []
    current = affiliate_id
    seen = set()

    for depth in range(1, max_levels + 1):
        if not current or current in seen:
            break
        chain.append(AffiliateRef(affiliate_id=current, depth=depth))
        seen.add(current)
        current = ref.get(current)

    return chain


class HierarchyResolver(ABC):
    """affiliate id -> ordered ancestor chain (depth 1 first)."""

    @abstractmethod
    def resolve(self, affiliate_id: str) -> List[AffiliateRef]:
        ...

    @abstractmethod
    def register(self, child_id: str, parent_id: str) -> None:
        ...


class InMemoryHierarchyResolver(HierarchyResolver):
    """
    referral tree held in a dict (child -> parent).
    affiliates that were never registered resolve to an empty chain.
    """

    def __init__(self, ref: Optional[Dict[str, str]] = None, affiliates=(), max_levels: int = MAX_DEPTH):
        self._lock = threading.Lock()
        self.ref = dict(ref or {})
        self.known = set(self.ref) | set(self.ref.values()) | set(affiliates)
        self.max_levels = max_levels

    def add_affiliate(self, affiliate_id: str) -> None:
        with self._lock:
            self.known.add(affiliate_id)

    def register(self, child_id: str, parent_id: str) -> None:
        with self._lock:
            register_referral(child_id, parent_id, self.ref)
            self.known.update((child_id, parent_id))

    def resolve(self, affiliate_id: str) -> List[AffiliateRef]:
        with self._lock:
            if affiliate_id not in self.known:
                return []
            return get_ancestor_chain(affiliate_id, self.ref, self.max_levels)
