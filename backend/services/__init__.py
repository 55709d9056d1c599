"""
Service layer: vector memory, policy retrieval, filter synthesis, completion
streaming, the conversation ledger and the answering pipeline.
"""
