"""prodoh: answer classic UDP DNS queries from DNS-over-HTTPS JSON upstreams."""
