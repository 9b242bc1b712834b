from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True)
class LocalPrediction:
    label: str
    score: float


class LocalClassifier(ABC):
    @abstractmethod
    def train(self, descriptions: Sequence[str], labels: Sequence[str]) -> None:
        """Replace the model with one fitted on the given examples."""
        pass

    @abstractmethod
    def classify(self, description: str) -> LocalPrediction | None:
        """Best label and its probability, or None when the model cannot answer."""
        pass

    @abstractmethod
    def learn(self, description: str, label: str) -> None:
        """Add a single confirmed example."""
        pass

    @property
    @abstractmethod
    def is_trained(self) -> bool:
        pass
