"""Sharded key/value servers and the client that routes requests to them."""