"""Text taggers mapping a document to topic weights."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union

import numpy as np
from pydantic import BaseModel, Field
from sklearn.feature_extraction.text import CountVectorizer, TfidfTransformer

from .model_store import ModelFamily, parse_model_family


TOKEN_PATTERN = r"(?u)\b\w+\b"
"""Tokens are runs of word characters, single characters included."""


def document_text(document: Mapping[str, Any]) -> str:
    """Text of a ``{title, description}`` document."""
    title = document.get("title") or ""
    description = document.get("description") or ""
    return f"{title} {description}".strip()


class TfIdfVectorizer:
    """Term weighting against a model's fixed vocabulary."""

    def __init__(self, vocab_idfs: Mapping[str, Tuple[int, float]]) -> None:
        self.vocabulary = {term: int(index) for term, (index, _) in vocab_idfs.items()}
        self.idfs = np.zeros(len(self.vocabulary))
        for index, idf in vocab_idfs.values():
            self.idfs[int(index)] = idf

        # 💡: CountVectorizer with an explicit vocabulary needs no fit; indices
        # must be exactly 0..n-1, which the model guarantees
        self._counter: Optional[CountVectorizer] = None
        self._weighting: Optional[TfidfTransformer] = None
        if self.vocabulary:
            self._counter = CountVectorizer(
                vocabulary=self.vocabulary,
                lowercase=True,
                token_pattern=TOKEN_PATTERN,
            )
            # The idf weights come from the trained model, so the transformer is never fit
            self._weighting = TfidfTransformer(norm="l2", use_idf=True, smooth_idf=False)
            self._weighting.idf_ = self.idfs
            self._weighting.n_features_in_ = len(self.idfs)

    @property
    def size(self) -> int:
        return len(self.vocabulary)

    def transform(self, text: str) -> np.ndarray:
        """L2-normalised tf-idf vector of ``text``. All zeros if nothing matches."""
        if self._counter is None or self._weighting is None:
            return np.zeros(0)
        counts = self._counter.transform([text])
        return self._weighting.transform(counts).toarray()[0]


class TextTagger(Protocol):
    """Maps a ``{title, description}`` document to ``{topic: weight}``."""

    def tag(self, document: Mapping[str, Any]) -> Dict[str, float]:
        ...


class NaiveBayesClass(BaseModel):
    log_prior: float
    feature_log_probs: List[float]


class NaiveBayesModel(BaseModel):
    """Trained multinomial naive Bayes model blob."""

    positive_class_label: str = Field(default="", description="Topic emitted for positive documents")
    positive_class_id: int = Field(default=0, ge=0)
    positive_class_threshold_log_prob: float = Field(
        default=0.0,
        description="Minimum normalised log probability of the positive class",
    )
    classes: List[NaiveBayesClass] = Field(default_factory=list)
    vocab_idfs: Dict[str, Tuple[int, float]] = Field(default_factory=dict)


class NmfModel(BaseModel):
    """Trained non-negative matrix factorization model blob."""

    topic_names: List[str] = Field(default_factory=list)
    h: List[List[float]] = Field(
        default_factory=list,
        description="Topic by vocabulary component matrix",
    )
    vocab_idfs: Dict[str, Tuple[int, float]] = Field(default_factory=dict)


class NaiveBayesTextTagger:
    """Frequency based classifier: tags a document with the positive class when confident."""

    def __init__(self, model: Union[NaiveBayesModel, Mapping[str, Any]]) -> None:
        if not isinstance(model, NaiveBayesModel):
            model = NaiveBayesModel.model_validate(model)
        self.model = model
        self.vectorizer = TfIdfVectorizer(model.vocab_idfs)
        self._log_priors = np.array([c.log_prior for c in model.classes])
        self._feature_log_probs = np.array([c.feature_log_probs for c in model.classes])

    def tag(self, document: Mapping[str, Any]) -> Dict[str, float]:
        if not self.model.classes or self.vectorizer.size == 0:
            return {}

        vector = self.vectorizer.transform(document_text(document))
        if not vector.any():
            return {}

        class_log_probs = self._log_priors + self._feature_log_probs.dot(vector)
        log_prob = class_log_probs[self.model.positive_class_id] - np.logaddexp.reduce(class_log_probs)
        if log_prob < self.model.positive_class_threshold_log_prob:
            return {}
        return {self.model.positive_class_label: float(np.exp(log_prob))}


class NmfTextTagger:
    """Factorization based classifier: distributes a document over NMF topics."""

    def __init__(self, model: Union[NmfModel, Mapping[str, Any]]) -> None:
        if not isinstance(model, NmfModel):
            model = NmfModel.model_validate(model)
        self.model = model
        self.vectorizer = TfIdfVectorizer(model.vocab_idfs)
        self._components = np.array(model.h, dtype=float)

    def tag(self, document: Mapping[str, Any]) -> Dict[str, float]:
        if not self.model.topic_names or self.vectorizer.size == 0:
            return {}

        vector = self.vectorizer.transform(document_text(document))
        if not vector.any():
            return {}

        weights = np.clip(self._components.dot(vector), 0.0, None)
        total = weights.sum()
        if total <= 0:
            return {}
        return {
            name: float(weight / total)
            for name, weight in zip(self.model.topic_names, weights)
        }


def build_tagger(family: Union[str, ModelFamily], model: Mapping[str, Any]) -> TextTagger:
    """Wrap a model blob in the tagger for its family."""
    family = parse_model_family(family, context="generate tagger")
    if family is ModelFamily.NB:
        return NaiveBayesTextTagger(model)
    return NmfTextTagger(model)
