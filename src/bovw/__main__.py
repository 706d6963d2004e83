#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
from bovw.cli import main

if __name__ == "__main__":
    main()
