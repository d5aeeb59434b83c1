"""Provision Linux web hosts over SSH: nginx, PHP-FPM, MySQL, Redis, Node.js, SSL and diagnostics."""
