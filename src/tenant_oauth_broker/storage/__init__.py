"""Storage backends and broker record stores."""
