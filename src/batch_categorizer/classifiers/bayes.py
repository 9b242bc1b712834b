import os
import pickle
from collections.abc import Sequence

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.naive_bayes import MultinomialNB
from sklearn.pipeline import Pipeline

from batch_categorizer.domain.text import normalize
from batch_categorizer.logger import get_logger

from .base import LocalClassifier, LocalPrediction

logger = get_logger(__name__)

MIN_TRAINING_EXAMPLES = 5


def _build_pipeline() -> Pipeline:
    return Pipeline([
        ('tfidf', TfidfVectorizer(preprocessor=normalize, ngram_range=(1, 2), min_df=1)),
        ('clf', MultinomialNB(alpha=0.5)),
    ])


class BayesClassifier(LocalClassifier):
    """
    Naive Bayes over normalized descriptions, trained on description -> category id.

    With ``data_path`` set, the examples are pickled after each change and the
    model is refitted from them on start-up.
    """

    def __init__(self, data_path: str | None = None, min_examples: int = MIN_TRAINING_EXAMPLES):
        self.data_path = data_path
        self.min_examples = min_examples
        self.pipeline = _build_pipeline()
        self.examples: list[str] = []
        self.labels: list[str] = []
        self._fitted = False
        self.load()

    @property
    def is_trained(self) -> bool:
        return self._fitted

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, "rb") as f:
                data = pickle.load(f)
        except (pickle.UnpicklingError, EOFError) as e:
            logger.warning(f"[BAYES] Ignoring unreadable model file {self.data_path}: {e}")
            return
        self.examples = list(data.get("examples", []))
        self.labels = list(data.get("labels", []))
        self._fit()

    def save(self) -> None:
        if not self.data_path:
            return
        with open(self.data_path, "wb") as f:
            pickle.dump({
                "examples": self.examples,
                "labels": self.labels
            }, f)

    def _fit(self) -> bool:
        if len(self.examples) < self.min_examples:
            self._fitted = False
            return False
        # fit a fresh pipeline aside; the current one keeps serving until swapped
        pipeline = _build_pipeline()
        try:
            pipeline.fit(list(self.examples), list(self.labels))
        except ValueError as e:
            # empty vocabulary: every description normalized to nothing
            logger.warning(f"[BAYES] Training failed: {e}")
            self._fitted = False
            return False
        self.pipeline = pipeline
        self._fitted = True
        return True

    def train(self, descriptions: Sequence[str], labels: Sequence[str]) -> None:
        if len(descriptions) != len(labels):
            raise ValueError("descriptions and labels must have the same length")
        self.examples = [str(d) for d in descriptions]
        self.labels = [str(label) for label in labels]
        if self._fit():
            logger.info(
                f"[BAYES] Trained on {len(self.examples)} examples "
                f"across {len(set(self.labels))} categories"
            )
        self.save()

    def classify(self, description: str) -> LocalPrediction | None:
        if not self._fitted or not normalize(description):
            return None

        pipeline = self.pipeline
        probs = pipeline.predict_proba([description])[0]
        best = int(probs.argmax())
        return LocalPrediction(label=str(pipeline.classes_[best]), score=float(probs[best]))

    def learn(self, description: str, label: str) -> None:
        self.examples.append(description)
        self.labels.append(label)
        self._fit()
        self.save()

    def clear(self) -> None:
        self.examples = []
        self.labels = []
        self._fitted = False
        self.pipeline = _build_pipeline()
        self.save()
