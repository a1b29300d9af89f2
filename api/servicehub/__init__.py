"""ServiceHub: service-marketplace booking and payment API."""
