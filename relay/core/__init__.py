"""Configuration and logging shared by the relay package."""
