"""Service layer: business logic for the change lifecycle, automation and notifications."""
