from .vectors import combine, normalize, cosine_similarity, weighted_mean
from .features import (
    FeatureSet, StructuralFeatureExtractor, LexicalFeatureExtractor,
    EdgeDiscoverer, NullEdgeDiscoverer, LanguageRegistry, hash_features
)
from .generator import EmbeddingGenerator, GenerativeModel, TextEncoder
