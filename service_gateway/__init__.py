"""SuperApp API Gateway service."""
