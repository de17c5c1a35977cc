"""
Types shared between the server and the client: the error taxonomy and the
data model.
"""
