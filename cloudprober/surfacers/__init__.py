"""Prometheus, Stackdriver and file surfacers that export event metrics, and their registry."""