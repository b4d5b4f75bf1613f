"""Roll social core: relationships, feed and photo uploads over a document store."""
