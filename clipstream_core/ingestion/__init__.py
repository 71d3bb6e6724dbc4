"""Stage work for uploaded videos: fingerprinting, media tooling and executors."""
