"""HTTP API for the loyalty engine"""
