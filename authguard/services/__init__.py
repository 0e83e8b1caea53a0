"""Security services: scoring, rate limiting, fraud, rules and the composition root."""
