# Shared error envelopes, logging setup and correlation ids
