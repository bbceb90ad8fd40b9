"""Session components: conversation, model lifecycle, generation."""
