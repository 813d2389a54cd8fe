"""
Similarity Scoring Module

Pairwise similarity between face snapshots and its one-vs-many aggregation.
The scoring function is pluggable: a deterministic pixel-correlation scorer
serves as the reference, and embedding scorers wrap a face model.
"""

import functools
import logging
from typing import Any, Callable, Dict, Optional, Sequence

import cv2
import numpy as np
from deepface import DeepFace
from sklearn.metrics.pairwise import cosine_similarity

from .types import AggregateScores, FaceSnapshot, decode_image

logger = logging.getLogger(__name__)


def clip_score(value: float) -> float:
    """Clamp a similarity to [0, 1]; NaN counts as no similarity."""
    if value is None or np.isnan(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))


class SimilarityScorer:
    """Scores how likely two snapshots show the same person."""

    def score(self, a: FaceSnapshot, b: FaceSnapshot) -> float:
        raise NotImplementedError

    def score_against_set(self, query: FaceSnapshot,
                          references: Sequence[FaceSnapshot]) -> float:
        """
        Best-match similarity of a query against a reference set.

        Args:
            query: Snapshot to score
            references: Enrolled snapshots

        Returns:
            Maximum pairwise score, or 0.0 for an empty set
        """
        best = 0.0
        for reference in references:
            best = max(best, clip_score(self.score(query, reference)))
        return best

    def aggregate(self, captured: Sequence[FaceSnapshot],
                  enrolled: Sequence[FaceSnapshot]) -> AggregateScores:
        """
        Best-match score of every captured snapshot, reduced to mean and min.

        Args:
            captured: Freshly captured snapshots
            enrolled: Enrolled reference snapshots

        Returns:
            Per-snapshot scores with their mean and minimum
        """
        per_snapshot = tuple(self.score_against_set(query, enrolled) for query in captured)
        if not per_snapshot:
            return AggregateScores(per_snapshot=(), mean=0.0, min=0.0)

        return AggregateScores(
            per_snapshot=per_snapshot,
            mean=clip_score(float(np.mean(per_snapshot))),
            min=min(per_snapshot)
        )


class PixelCosineScorer(SimilarityScorer):
    """
    Deterministic reference scorer.

    Both crops are decoded to grayscale, resized to a fixed square, histogram
    equalized and mean-centred; the score is their cosine similarity with
    negative values clipped to zero.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config.get('similarity', {})
        self.image_size = int(self.config.get('image_size', 64))
        self.cache_size = int(self.config.get('cache_size', 256))
        self._vector_for = functools.lru_cache(maxsize=self.cache_size)(self._compute_vector)

    def _compute_vector(self, image: bytes) -> Optional[np.ndarray]:
        gray = decode_image(image, cv2.IMREAD_GRAYSCALE)
        if gray is None or gray.size == 0:
            logger.warning("Could not decode snapshot for scoring")
            return None

        resized = cv2.resize(gray, (self.image_size, self.image_size),
                             interpolation=cv2.INTER_AREA)
        equalized = cv2.equalizeHist(resized)
        vector = equalized.astype(np.float64).flatten()
        vector -= vector.mean()
        return vector

    def _vectorize(self, snapshot: FaceSnapshot) -> Optional[np.ndarray]:
        return self._vector_for(snapshot.image)

    def score(self, a: FaceSnapshot, b: FaceSnapshot) -> float:
        vec_a = self._vectorize(a)
        vec_b = self._vectorize(b)
        if vec_a is None or vec_b is None:
            return 0.0

        # Flat crops have no variance to correlate
        if not np.any(vec_a) or not np.any(vec_b):
            return 1.0 if a.image == b.image else 0.0

        return clip_score(cosine_similarity([vec_a], [vec_b])[0][0])

    def cache_info(self):
        return self._vector_for.cache_info()

    def clear_cache(self):
        self._vector_for.cache_clear()


class EmbeddingScorer(SimilarityScorer):
    """Cosine similarity of embeddings produced by a pluggable face model."""

    def __init__(self, embed: Callable[[np.ndarray], Optional[np.ndarray]],
                 cache_size: int = 256):
        """
        Args:
            embed: Maps a decoded BGR face crop to an embedding vector
            cache_size: Most recent snapshots whose embeddings are kept
        """
        self.embed = embed
        self._embedding_for = functools.lru_cache(maxsize=cache_size)(self._compute_embedding)

    def _compute_embedding(self, image: bytes) -> Optional[np.ndarray]:
        decoded = decode_image(image)
        if decoded is None:
            return None

        try:
            embedding = self.embed(decoded)
        except Exception as e:
            logger.error(f"Embedding generation failed: {e}")
            return None
        if embedding is None:
            return None

        embedding = np.asarray(embedding, dtype=np.float64).flatten()
        norm = np.linalg.norm(embedding)
        return embedding / norm if norm > 0 else None

    def _embedding(self, snapshot: FaceSnapshot) -> Optional[np.ndarray]:
        return self._embedding_for(snapshot.image)

    def score(self, a: FaceSnapshot, b: FaceSnapshot) -> float:
        emb_a = self._embedding(a)
        emb_b = self._embedding(b)
        if emb_a is None or emb_b is None or len(emb_a) != len(emb_b):
            return 0.0
        return clip_score(cosine_similarity([emb_a], [emb_b])[0][0])

    def cache_info(self):
        return self._embedding_for.cache_info()

    def clear_cache(self):
        self._embedding_for.cache_clear()


class DeepFaceEmbeddingScorer(EmbeddingScorer):
    """Embedding scorer backed by DeepFace.represent."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config.get('similarity', {})
        self.model_name = self.config.get('model_name', 'Facenet')
        super().__init__(self._represent, cache_size=int(self.config.get('cache_size', 256)))
        logger.info(f"Embedding scorer initialized with model: {self.model_name}")

    def _represent(self, face_image: np.ndarray) -> Optional[np.ndarray]:
        # Snapshots are already cropped, so skip detection
        representations = DeepFace.represent(
            img_path=face_image,
            model_name=self.model_name,
            detector_backend='skip',
            enforce_detection=False
        )
        if not representations:
            logger.warning("No face embedding generated")
            return None
        return np.asarray(representations[0]['embedding'])


SCORERS = {
    'pixel': PixelCosineScorer,
    'deepface': DeepFaceEmbeddingScorer
}


def create_scorer(config: Dict[str, Any]) -> SimilarityScorer:
    """Build the scorer selected by similarity.method."""
    method = config.get('similarity', {}).get('method', 'pixel')
    scorer_cls = SCORERS.get(method)
    if scorer_cls is None:
        logger.warning(f"Unknown similarity method: {method}, falling back to pixel")
        scorer_cls = PixelCosineScorer
    return scorer_cls(config)
