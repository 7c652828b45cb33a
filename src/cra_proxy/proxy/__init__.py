"""Version resolution, path rewriting and the fetch-through cache."""
