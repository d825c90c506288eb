import logging

from fleetrecall.schemas import EaInfo, VinScrapeResult


logger = logging.getLogger(__name__)

UNAVAILABLE_ERROR = "registry data not available"


class RecallDedupCache:
    """Maps each unique recall number to the VINs that carry it.

    Resolved registry data is stored once per recall number and the same
    EaInfo instance is handed to every VIN sharing that number.
    """

    def __init__(self) -> None:
        self._vins_by_recall: dict[str, list[VinScrapeResult]] = {}
        self._resolved: dict[str, EaInfo] = {}

    @classmethod
    def from_results(cls, results: list[VinScrapeResult]) -> "RecallDedupCache":
        cache = cls()
        for result in results:
            if not result.succeeded:
                continue
            for entry in result.valid_recalls():
                cache.add(entry.recall_number, result)
        return cache

    def add(self, recall_number: str, result: VinScrapeResult) -> None:
        vins = self._vins_by_recall.setdefault(recall_number, [])
        if any(existing is result for existing in vins):
            return
        vins.append(result)

    @property
    def unique_recall_numbers(self) -> list[str]:
        return list(self._vins_by_recall)

    @property
    def pair_count(self) -> int:
        return sum(len(vins) for vins in self._vins_by_recall.values())

    def vins_for(self, recall_number: str) -> list[VinScrapeResult]:
        return list(self._vins_by_recall.get(recall_number, []))

    def record(self, recall_number: str, info: EaInfo) -> None:
        self._resolved[recall_number] = info

    def is_resolved(self, recall_number: str) -> bool:
        return recall_number in self._resolved

    def resolved(self, recall_number: str) -> EaInfo | None:
        return self._resolved.get(recall_number)

    @property
    def pending(self) -> list[str]:
        return [number for number in self._vins_by_recall if number not in self._resolved]

    def broadcast(self) -> int:
        assigned = 0
        for recall_number, vins in self._vins_by_recall.items():
            info = self._resolved.get(recall_number)
            if info is None:
                info = EaInfo.unavailable(recall_number, UNAVAILABLE_ERROR)
                self._resolved[recall_number] = info
                logger.warning(
                    "no registry data for recall number",
                    extra={"recall_number": recall_number, "vin_count": len(vins)},
                )
            for result in vins:
                result.recall_to_ea[recall_number] = info
                assigned += 1
        return assigned
