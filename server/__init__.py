"""
Server side of the encrypted chat: credential issuer, identity directory and
ciphertext relay.
"""
