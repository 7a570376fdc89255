"""Security primitives: hashing, signing, encryption, throttling, CSRF."""
