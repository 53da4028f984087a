"""Preview, approval and HD generation workflow for staged room photos."""
