"""
Input plugins package.

Input plugins accept desired state from users and write it to the store.
"""
