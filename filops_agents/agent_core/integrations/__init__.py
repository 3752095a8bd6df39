"""External collaborators: provider selection and deal execution."""
