"""Tests for the zero-shot classifier wrapper and the sentence pooling."""

import asyncio

import numpy as np
import pytest

from skystream.classifier import ZeroShotClassifier, ranked_scores
from skystream.embeddings import mean_pool


class RecordingPipeline:
    """Answers like the transformers zero-shot pipeline and remembers its calls."""

    def __init__(self, scores):
        self.scores = scores
        self.calls = []

    def __call__(self, text, candidate_labels, hypothesis_template, multi_label):
        self.calls.append(
            {
                "text": text,
                "candidate_labels": candidate_labels,
                "hypothesis_template": hypothesis_template,
                "multi_label": multi_label,
            }
        )
        ordered = sorted(candidate_labels, key=lambda label: self.scores[label], reverse=True)
        return {"sequence": text, "labels": ordered, "scores": [self.scores[label] for label in ordered]}


def loaded_classifier(scores, template="This example is {}."):
    classifier = ZeroShotClassifier(hypothesis_template=template)
    classifier.classifier = RecordingPipeline(scores)
    classifier._model_loaded = True
    return classifier


def test_ranked_scores_best_first():
    result = {"labels": ["Sports", "Politics", "AI"], "scores": [0.1, 0.95, 0.4]}
    ranked = ranked_scores(result)
    assert [label for label, _ in ranked] == ["Politics", "AI", "Sports"]
    assert ranked[0][1] == pytest.approx(0.95)
    assert all(isinstance(score, float) for _, score in ranked)


class TestClassify:
    def test_passes_labels_template_and_mode(self):
        classifier = loaded_classifier({"Politics": 0.97, "AI": 0.2})

        ranked = asyncio.run(classifier.classify("The senate passed the bill", ["AI", "Politics"], multi_label=True))

        assert ranked == [("Politics", pytest.approx(0.97)), ("AI", pytest.approx(0.2))]
        call = classifier.classifier.calls[0]
        assert call["text"] == "The senate passed the bill"
        assert call["candidate_labels"] == ["AI", "Politics"]
        assert call["hypothesis_template"] == "This example is {}."
        assert call["multi_label"] is True

    def test_single_label_mode(self):
        classifier = loaded_classifier({"Politics": 0.6, "AI": 0.4})
        asyncio.run(classifier.classify("text", ["Politics", "AI"], multi_label=False))
        assert classifier.classifier.calls[0]["multi_label"] is False

    def test_no_labels_skips_inference(self):
        classifier = loaded_classifier({})
        assert asyncio.run(classifier.classify("text", [])) == []
        assert classifier.classifier.calls == []

    def test_before_initialize_fails(self):
        classifier = ZeroShotClassifier()
        with pytest.raises(RuntimeError):
            asyncio.run(classifier.classify("text", ["Politics"]))

    def test_close_unloads(self):
        classifier = loaded_classifier({"Politics": 0.9})
        classifier.close()
        with pytest.raises(RuntimeError):
            asyncio.run(classifier.classify("text", ["Politics"]))


class TestMeanPool:
    def test_ignores_padding_and_normalises(self):
        hidden = np.array([[[1.0, 0.0], [3.0, 0.0], [100.0, 100.0]]])
        mask = np.array([[1, 1, 0]])
        pooled = mean_pool(hidden, mask)

        assert pooled.shape == (1, 2)
        assert pooled[0].tolist() == pytest.approx([1.0, 0.0])
        assert np.linalg.norm(pooled[0]) == pytest.approx(1.0)
