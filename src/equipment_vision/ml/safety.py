"""Safety provider combining the NSFW classifier with the person detector."""

from __future__ import annotations

from dataclasses import dataclass, field

from equipment_vision.ml.nsfw import NsfwClassifier
from equipment_vision.ml.person import PersonDetector


@dataclass
class SafetyResult:
    """Raw safety signals; the block decision belongs to the caller."""

    nsfw_score: float
    has_person: bool | None
    person_count: int = 0
    person_boxes: list[list[float]] = field(default_factory=list)


class SafetyProvider:
    def __init__(self, classifier: NsfwClassifier, detector: PersonDetector | None = None) -> None:
        self._classifier = classifier
        self._detector = detector

    def warmup(self) -> None:
        self._classifier.warmup()
        if self._detector is not None and self._detector.enabled:
            self._detector.warmup()

    def close(self) -> None:
        self._classifier.close()
        if self._detector is not None:
            self._detector.close()

    def check(self, data: bytes) -> SafetyResult:
        nsfw_score = self._classifier.score(data)
        if self._detector is None or not self._detector.enabled:
            return SafetyResult(nsfw_score=nsfw_score, has_person=None)

        people = self._detector.detect(data)
        return SafetyResult(
            nsfw_score=nsfw_score,
            has_person=bool(people),
            person_count=len(people),
            person_boxes=[person.bbox.to_list() for person in people],
        )


__all__ = ["SafetyProvider", "SafetyResult"]
