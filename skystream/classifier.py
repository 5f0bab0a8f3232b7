import asyncio
import os
import time
from concurrent.futures import Executor
from typing import Dict, List, Optional, Sequence, Tuple

from optimum.onnxruntime import ORTModelForSequenceClassification
from transformers import AutoTokenizer, pipeline

from .config import settings
from .logging_setup import get_logger
from .metrics import model_inference_duration_seconds, processing_errors_total

logger = get_logger(__name__)


def ranked_scores(result: Dict) -> List[Tuple[str, float]]:
    """Flatten a zero-shot pipeline result into ``(label, score)`` pairs, best first."""
    pairs = [(label, float(score)) for label, score in zip(result["labels"], result["scores"])]
    return sorted(pairs, key=lambda pair: pair[1], reverse=True)


class ZeroShotClassifier:
    """NLI-based zero-shot classifier running an ONNX model on CPU.

    Every candidate label is turned into a hypothesis through the template and
    scored against the text by the transformers zero-shot pipeline. Inference
    runs on the given executor so the event loop is never blocked by the model.
    """

    def __init__(
        self,
        model_name: str = settings.MODEL_NAME,
        file_name: str = settings.MODEL_FILE_NAME,
        cache_dir: str = settings.MODEL_CACHE_DIR,
        hypothesis_template: str = settings.HYPOTHESIS_TEMPLATE,
        max_length: int = settings.MAX_SEQUENCE_LENGTH,
        executor: Optional[Executor] = None,
    ):
        self.model_name = model_name
        self.file_name = file_name
        self.cache_dir = cache_dir
        self.hypothesis_template = hypothesis_template
        self.max_length = max_length
        self.executor = executor
        self.classifier = None
        self.id2label = None
        self._model_loaded = False

    async def initialize(self) -> None:
        """Load the ONNX model and build the zero-shot pipeline."""
        try:
            logger.info("Initializing zero-shot classifier", model=self.model_name)
            os.makedirs(self.cache_dir, exist_ok=True)

            def load_model():
                model = ORTModelForSequenceClassification.from_pretrained(
                    self.model_name,
                    cache_dir=self.cache_dir,
                    file_name=self.file_name,
                )
                # The pipeline truncates the post (never the hypothesis) to this length
                tokenizer = AutoTokenizer.from_pretrained(
                    self.model_name,
                    cache_dir=self.cache_dir,
                    model_max_length=self.max_length,
                )

                pipe = pipeline(
                    "zero-shot-classification",
                    model=model,
                    tokenizer=tokenizer,
                    device=-1,  # CPU inference
                )
                return pipe, model.config.id2label

            # Run model loading in thread pool to avoid blocking event loop
            loop = asyncio.get_running_loop()
            self.classifier, self.id2label = await loop.run_in_executor(self.executor, load_model)

            self._model_loaded = True
            logger.info("Zero-shot classifier initialized successfully", labels=dict(self.id2label))

        except Exception as e:
            logger.error("Failed to initialize zero-shot classifier", error=str(e))
            processing_errors_total.labels(stage="filter", error_type="model_init").inc()
            raise

    def _predict(self, text: str, labels: Sequence[str], multi_label: bool) -> List[Tuple[str, float]]:
        result = self.classifier(
            text,
            candidate_labels=list(labels),
            hypothesis_template=self.hypothesis_template,
            multi_label=multi_label,
        )
        return ranked_scores(result)

    async def classify(
        self, text: str, labels: Sequence[str], multi_label: bool = settings.MULTI_LABEL
    ) -> List[Tuple[str, float]]:
        """Score every candidate label for the text, best first."""
        if not self._model_loaded:
            raise RuntimeError("Zero-shot classifier not initialized")
        if not labels:
            return []

        start_time = time.time()
        loop = asyncio.get_running_loop()
        results = await loop.run_in_executor(self.executor, self._predict, text, list(labels), multi_label)
        model_inference_duration_seconds.labels(model="zero_shot").observe(time.time() - start_time)

        logger.debug("Zero-shot classification complete", scores=results)
        return results

    def close(self) -> None:
        self.classifier = None
        self._model_loaded = False
