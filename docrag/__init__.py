"""Multi-tenant document chunking and hybrid retrieval service.

Submodules:
- segmenter / rule_chunker: rule-based boundary detection and "smart" chunking
- semantic_chunker: AI-assisted chunking with rule-based fallback
- late_chunking: embed-first, pool-second chunk embeddings
- strategy: per-chatbot strategy selection and A/B bucketing
- retrieval: dense + keyword search fused with Reciprocal Rank Fusion
- cache: semantic response cache
- store / models / db: PostgreSQL + pgvector persistence
- ingestion: chunking job and file ingestor
- tokenizer: tiktoken token counting for embedding inputs
- obs: Langfuse traces and OpenTelemetry spans
- main: FastAPI application
"""
