import threading
from dataclasses import dataclass, field
from typing import Dict, List, Iterable

from crawler.models import PatternSignature

# A signature matters once this many pages shared it
SIGNIFICANT_OBSERVATIONS = 3


@dataclass
class LearnResult:
    new_signatures: List[PatternSignature] = field(default_factory=list)
    total_signatures: int = 0
    drift: bool = False


class PatternTracker:
    """
    Delta tracker for structural signatures.

    FLOW: begin_batch() remembers which signatures were already significant ->
    observe() is fed every analyzed page -> learn() reports signatures that became
    significant during the batch; enough of them means the site layout drifted.
    """

    def __init__(self, min_new_signatures: int = 3, significant_observations: int = SIGNIFICANT_OBSERVATIONS):
        self.min_new_signatures = max(1, min_new_signatures)
        self.significant_observations = significant_observations
        self._signatures: Dict[str, PatternSignature] = {}
        self._baseline = set()
        self._lock = threading.Lock()

    def begin_batch(self):
        with self._lock:
            self._baseline = {h for h, s in self._signatures.items() if self._is_significant(s)}

    def observe(self, url: str, signature_hash: str) -> PatternSignature:
        with self._lock:
            sig = self._signatures.get(signature_hash)
            if sig is None:
                sig = PatternSignature(hash=signature_hash)
                self._signatures[signature_hash] = sig
            sig.observe(url)
            return sig

    def learn(self) -> LearnResult:
        with self._lock:
            new = [s for h, s in self._signatures.items()
                   if self._is_significant(s) and h not in self._baseline]
            total = len(self._signatures)
        new.sort(key=lambda s: -s.observed_count)
        return LearnResult(new_signatures=new, total_signatures=total,
                           drift=len(new) >= self.min_new_signatures)

    def _is_significant(self, sig: PatternSignature) -> bool:
        return sig.observed_count >= self.significant_observations

    def get(self, signature_hash: str):
        with self._lock:
            return self._signatures.get(signature_hash)

    def signatures(self) -> List[PatternSignature]:
        with self._lock:
            return list(self._signatures.values())

    def to_list(self) -> List[dict]:
        with self._lock:
            return [s.to_dict() for s in self._signatures.values()]

    def load(self, items: Iterable):
        """Accepts PatternSignature objects or their dict form (checkpoints, storage)."""
        with self._lock:
            for item in items:
                sig = item if isinstance(item, PatternSignature) else PatternSignature.from_dict(item)
                current = self._signatures.get(sig.hash)
                if current is None or sig.observed_count > current.observed_count:
                    self._signatures[sig.hash] = sig
            self._baseline = {h for h, s in self._signatures.items() if self._is_significant(s)}
