"""Transactional core of the store's order pipeline: carts, inventory reservation and order lifecycle."""
