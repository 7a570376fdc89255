"""Single sign-on: provider adapters, handshake state, and account linking."""
