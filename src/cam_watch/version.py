"""Version information for CamWatch."""

APP_VERSION = "0.3.0"
