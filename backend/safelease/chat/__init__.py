"""Real-time chat between two SafeLease users.

Modules:
    - conversation: Conversation key derivation
    - store: DuckDB message log
    - manager: WebSocket session and room management
    - router: WebSocket and HTTP endpoints
    - client: Async chat client
"""
