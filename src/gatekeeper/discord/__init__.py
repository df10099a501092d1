"""Discord adapters: gateway events, moderation actions and verification threads."""
