"""IPTV Stream+ backend: playlist parsing and visit statistics."""
