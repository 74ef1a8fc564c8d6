# Core modules for target_encode
