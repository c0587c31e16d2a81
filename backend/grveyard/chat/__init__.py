"""Real-time direct messaging over WebSockets."""
