"""AI mail assistant backend: Gmail push sync and real-time event fan-out."""
