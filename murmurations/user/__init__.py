"""Player profile access shared by the murmuration engine."""
