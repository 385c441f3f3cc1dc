"""Disposable, cache-backed k3s clusters for local development and CI."""
