"""Packed symmetric storage and block-structured assembly targets."""
