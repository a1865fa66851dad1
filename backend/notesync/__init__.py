"""NoteSync: offline-first synchronization of notes, folders and tags."""
