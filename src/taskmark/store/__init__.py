"""Client-side entity stores and pure view selectors."""
