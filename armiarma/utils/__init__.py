"""Helpers for multiaddresses, user agents, secp256k1 keys, IP geolocation, logging, lists and files."""