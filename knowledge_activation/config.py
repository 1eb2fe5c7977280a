"""Configuration for the Knowledge Activation Engine."""

from pathlib import Path

# On-disk stores default to paths under this directory
DATA_DIR = Path("data")
STATE_DB_PATH = DATA_DIR / "activation_state.db"
VECTOR_DIR = DATA_DIR / "vectors"
ACTIVATION_LOG_DIR = DATA_DIR / "logs" / "activations"

ENGINE_CONFIG = {
    # Keyword scanning
    "default_scan_depth": 2,
    "default_match_scope": ("user", "assistant"),

    # Vector retrieval
    "default_similarity_threshold": 0.7,
    "default_max_vector_results": 5,
    "vector_overfetch": 2,
    "vector_max_fetch": 512,
    "vector_query_depth": 2,
    "backend_timeout_seconds": 5.0,

    # Evaluation
    "evaluation_fan_out": 16,

    # Positioning
    "default_position": "before_character",
    "default_role": "system",
    "default_order": 100,

    # Budget
    "max_context_tokens": 8000,
    "budget_percentage": 25,
    "budget_cap_tokens": 2000,
    "reserved_for_conversation": 0,

    # Chunk quality
    "min_chunk_tokens": 50,

    # Embeddings
    "text_embedding_model": "all-MiniLM-L6-v2",
    "vector_collection": "knowledge_chunks",
}

CHUNK_PRESETS = {
    "lore": {"size": 750, "overlap": 50, "method": "paragraph"},
    "memory": {"size": 400, "overlap": 25, "method": "sentence"},
    "legacy_memory": {"size": 600, "overlap": 40, "method": "paragraph"},
    "document": {"size": 1000, "overlap": 75, "method": "sliding"},
}
