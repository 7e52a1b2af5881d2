"""
Shared helpers: error taxonomy, `Result`, timeout guard, trace ids and image sniffing.
"""
