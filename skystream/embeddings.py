import asyncio
import os
import time
from concurrent.futures import Executor
from typing import Optional

import numpy as np
from openai import AsyncOpenAI
from optimum.onnxruntime import ORTModelForFeatureExtraction
from transformers import AutoTokenizer

from .config import settings
from .logging_setup import get_logger
from .metrics import model_inference_duration_seconds, processing_errors_total

logger = get_logger(__name__)


def mean_pool(last_hidden_state: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token embeddings over the non-padding positions, then L2-normalise."""
    mask = attention_mask[..., None].astype(np.float32)
    summed = (last_hidden_state * mask).sum(axis=1)
    counts = np.clip(mask.sum(axis=1), 1e-9, None)
    pooled = summed / counts
    norms = np.clip(np.linalg.norm(pooled, axis=1, keepdims=True), 1e-12, None)
    return (pooled / norms).astype(np.float32)


class SentenceEmbedder:
    """Local sentence-embedding model for post text (384-d, cosine-normalised)."""

    def __init__(
        self,
        model_name: str = settings.EMBEDDING_MODEL_NAME,
        cache_dir: str = settings.MODEL_CACHE_DIR,
        dimension: int = settings.EMBEDDING_DIM,
        max_length: int = 256,
        executor: Optional[Executor] = None,
    ):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.dimension = dimension
        self.max_length = max_length
        self.executor = executor
        self.model = None
        self.tokenizer = None

    async def initialize(self) -> None:
        try:
            logger.info("Initializing sentence embedder", model=self.model_name)
            os.makedirs(self.cache_dir, exist_ok=True)

            def load_model():
                model = ORTModelForFeatureExtraction.from_pretrained(
                    self.model_name,
                    cache_dir=self.cache_dir,
                    subfolder="onnx",
                    file_name="model.onnx",
                )
                tokenizer = AutoTokenizer.from_pretrained(self.model_name, cache_dir=self.cache_dir)
                return model, tokenizer

            loop = asyncio.get_running_loop()
            self.model, self.tokenizer = await loop.run_in_executor(self.executor, load_model)
            logger.info("Sentence embedder initialized successfully", dim=self.dimension)

        except Exception as e:
            logger.error("Failed to initialize sentence embedder", error=str(e))
            processing_errors_total.labels(stage="embed", error_type="model_init").inc()
            raise

    def _encode(self, text: str) -> np.ndarray:
        inputs = self.tokenizer(
            [text], return_tensors="np", truncation=True, max_length=self.max_length, padding=True
        )
        outputs = self.model(**inputs)
        return mean_pool(np.asarray(outputs.last_hidden_state), inputs["attention_mask"])[0]

    async def embed(self, text: str) -> np.ndarray:
        if self.model is None:
            raise RuntimeError("Sentence embedder not initialized")

        start_time = time.time()
        loop = asyncio.get_running_loop()
        vector = await loop.run_in_executor(self.executor, self._encode, text)
        model_inference_duration_seconds.labels(model="sentence_embedding").observe(time.time() - start_time)

        if vector.shape[0] != self.dimension:
            raise ValueError(f"expected {self.dimension}-d embedding, got {vector.shape[0]}")
        return vector

    def close(self) -> None:
        self.model = None
        self.tokenizer = None


class OpenAIEmbedder:
    """Remote embedding model shared by the semantic router and the semantic cache."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = settings.ROUTER_EMBEDDING_MODEL,
        dimension: int = settings.ROUTER_EMBEDDING_DIM,
    ):
        self.client = client
        self.model = model
        self.dimension = dimension

    async def embed(self, text: str) -> np.ndarray:
        start_time = time.time()
        response = await self.client.embeddings.create(model=self.model, input=[text])
        model_inference_duration_seconds.labels(model="remote_embedding").observe(time.time() - start_time)
        return np.asarray(response.data[0].embedding, dtype=np.float32)
