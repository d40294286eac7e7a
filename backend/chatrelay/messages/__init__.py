"""Messages: send pipeline, read receipts, reactions and owner mutations."""
